"""Tests for the alert configuration edits."""

import base64

import pytest
import yaml

from monitoring_lifecycle.alert_config import (
    AlertConfigSecret,
    apply_receiver_edit,
    apply_route_edit,
    decode_document,
    encode_document,
)
from monitoring_lifecycle.exceptions import (
    DecodeError,
    ResourceConflictError,
    StructuralEditError,
)
from monitoring_lifecycle.manifest import (
    ALERTMANAGER_SECRET,
    ALERTMANAGER_SECRET_KEY,
    MONITORING_NAMESPACE,
    SECRET_KIND,
)

from .fakes import ALERTMANAGER_CONFIG, FakeCluster, alertmanager_secret

URL = "http://10.0.0.7:30080/"
OTHER_URL = "http://10.0.0.8:31000/"


def test_decode_document() -> None:
    """Test decoding an alert configuration document."""
    doc = decode_document(ALERTMANAGER_CONFIG.encode())
    assert doc["route"]["receiver"] == "null"
    assert doc["receivers"] == [{"name": "null"}]


@pytest.mark.parametrize(
    ("blob", "match"),
    [
        (b"\xff\xfe", "UTF-8"),
        (b"route: [unterminated", "YAML"),
        (b"- a\n- b\n", "mapping"),
        (b"", "mapping"),
    ],
)
def test_decode_document_invalid(blob: bytes, match: str) -> None:
    """Test documents that can't be edited are rejected."""
    with pytest.raises(DecodeError, match=match):
        decode_document(blob)


def test_encode_document_keeps_key_order() -> None:
    """Test encoding keeps the order keys were written in."""
    doc = decode_document(ALERTMANAGER_CONFIG.encode())
    assert list(decode_document(encode_document(doc))) == [
        "global",
        "route",
        "receivers",
        "templates",
    ]


def test_receiver_edit() -> None:
    """Test a webhook receiver is added next to the existing receivers."""
    result = decode_document(apply_receiver_edit(ALERTMANAGER_CONFIG.encode(), URL))

    assert result["receivers"] == [
        {"name": "null"},
        {
            "name": "webhook-receiver",
            "webhook_configs": [{"url": URL, "send_resolved": False}],
        },
    ]
    original = decode_document(ALERTMANAGER_CONFIG.encode())
    assert result["route"] == original["route"]
    assert result["global"] == original["global"]
    assert result["templates"] == original["templates"]


def test_receiver_edit_replaces_same_name() -> None:
    """Test editing the receiver again overwrites it in place."""
    blob = apply_receiver_edit(ALERTMANAGER_CONFIG.encode(), OTHER_URL)
    result = decode_document(apply_receiver_edit(blob, URL))

    assert [r["name"] for r in result["receivers"]] == ["null", "webhook-receiver"]
    assert result["receivers"][1]["webhook_configs"][0]["url"] == URL


def test_receiver_edit_without_receivers() -> None:
    """Test a document without receivers gets the list created."""
    result = decode_document(apply_receiver_edit(b"route:\n  receiver: 'null'\n", URL))
    assert [r["name"] for r in result["receivers"]] == ["webhook-receiver"]


def test_receiver_edit_wrong_structure() -> None:
    """Test receivers that are not a list can't be edited."""
    with pytest.raises(StructuralEditError, match="receivers"):
        apply_receiver_edit(b"receivers:\n  name: 'null'\n", URL)


def test_route_edit() -> None:
    """Test a route to the receiver is added and other routes are unchanged."""
    blob = apply_receiver_edit(ALERTMANAGER_CONFIG.encode(), URL)
    result = decode_document(
        apply_route_edit(blob, URL, matchers=['alertname="TestAlert"'])
    )

    routes = result["route"]["routes"]
    assert routes[0] == {"receiver": "null", "matchers": ['alertname = "Watchdog"']}
    assert routes[1] == {
        "receiver": "webhook-receiver",
        "matchers": ['alertname="TestAlert"'],
        "group_wait": "5s",
        "group_interval": "10s",
        "repeat_interval": "1m",
    }
    assert result["route"]["receiver"] == "null"
    assert result["route"]["group_by"] == ["job"]


def test_route_edit_twice() -> None:
    """Test editing the route again does not add a duplicate."""
    blob = apply_receiver_edit(ALERTMANAGER_CONFIG.encode(), URL)
    blob = apply_route_edit(apply_route_edit(blob, URL), URL)
    routes = decode_document(blob)["route"]["routes"]
    assert [route["receiver"] for route in routes] == ["null", "webhook-receiver"]


def test_route_edit_creates_routes() -> None:
    """Test a route without child routes gets the list created."""
    blob = apply_receiver_edit(b"route:\n  receiver: 'null'\n", URL)
    result = decode_document(apply_route_edit(blob, URL))
    assert [route["receiver"] for route in result["route"]["routes"]] == [
        "webhook-receiver"
    ]


def test_route_edit_requires_receiver() -> None:
    """Test a route can't be added before its receiver."""
    with pytest.raises(StructuralEditError, match="no receiver webhook-receiver"):
        apply_route_edit(ALERTMANAGER_CONFIG.encode(), URL)


def test_route_edit_requires_matching_url() -> None:
    """Test a route can't be added for a receiver delivering elsewhere."""
    blob = apply_receiver_edit(ALERTMANAGER_CONFIG.encode(), OTHER_URL)
    with pytest.raises(StructuralEditError, match="does not deliver to"):
        apply_route_edit(blob, URL)


def test_route_edit_without_route() -> None:
    """Test a document without a top level route can't be routed."""
    blob = apply_receiver_edit(b"receivers: []\n", URL)
    with pytest.raises(StructuralEditError, match="route"):
        apply_route_edit(blob, URL)


async def test_secret_patch() -> None:
    """Test patching writes the edited document back to the secret."""
    cluster = FakeCluster()
    cluster.add(alertmanager_secret())
    secret = AlertConfigSecret(
        cluster, MONITORING_NAMESPACE, ALERTMANAGER_SECRET, ALERTMANAGER_SECRET_KEY
    )

    updated = await secret.patch(lambda blob: apply_receiver_edit(blob, URL))

    assert updated["metadata"]["resourceVersion"] == "2"
    doc = decode_document(await secret.read())
    assert [r["name"] for r in doc["receivers"]] == ["null", "webhook-receiver"]


async def test_secret_patch_invalid_document() -> None:
    """Test nothing is written when the stored document can't be decoded."""
    cluster = FakeCluster()
    cluster.add(alertmanager_secret("- not\n- a mapping\n"))
    secret = AlertConfigSecret(
        cluster, MONITORING_NAMESPACE, ALERTMANAGER_SECRET, ALERTMANAGER_SECRET_KEY
    )

    with pytest.raises(DecodeError):
        await secret.patch(lambda blob: apply_receiver_edit(blob, URL))
    assert cluster.replaced == []


async def test_secret_patch_edit_output_checked() -> None:
    """Test an edit producing an unreadable document is not written."""
    cluster = FakeCluster()
    cluster.add(alertmanager_secret())
    secret = AlertConfigSecret(
        cluster, MONITORING_NAMESPACE, ALERTMANAGER_SECRET, ALERTMANAGER_SECRET_KEY
    )

    with pytest.raises(DecodeError):
        await secret.patch(lambda blob: b"[1, 2")
    assert cluster.replaced == []


async def test_secret_missing_key() -> None:
    """Test a secret without the configuration key can't be patched."""
    cluster = FakeCluster()
    doc = alertmanager_secret()
    doc["data"] = {"other.yaml": base64.b64encode(b"a: b").decode()}
    cluster.add(doc)
    secret = AlertConfigSecret(
        cluster, MONITORING_NAMESPACE, ALERTMANAGER_SECRET, ALERTMANAGER_SECRET_KEY
    )

    with pytest.raises(StructuralEditError, match="has no key alertmanager.yaml"):
        await secret.read()


async def test_secret_invalid_base64() -> None:
    """Test secret data that is not base64 is rejected."""
    cluster = FakeCluster()
    doc = alertmanager_secret()
    doc["data"][ALERTMANAGER_SECRET_KEY] = "not base64!"
    cluster.add(doc)
    secret = AlertConfigSecret(
        cluster, MONITORING_NAMESPACE, ALERTMANAGER_SECRET, ALERTMANAGER_SECRET_KEY
    )

    with pytest.raises(DecodeError, match="base64"):
        await secret.read()


async def test_secret_concurrent_write() -> None:
    """Test a write racing with another writer surfaces as a conflict."""
    cluster = FakeCluster()
    cluster.add(alertmanager_secret())
    secret = AlertConfigSecret(
        cluster, MONITORING_NAMESPACE, ALERTMANAGER_SECRET, ALERTMANAGER_SECRET_KEY
    )

    def racing_edit(blob: bytes) -> bytes:
        stored = cluster.find(SECRET_KIND, MONITORING_NAMESPACE, ALERTMANAGER_SECRET)
        stored["metadata"]["resourceVersion"] = "5"
        return apply_receiver_edit(blob, URL)

    with pytest.raises(ResourceConflictError):
        await secret.patch(racing_edit)

    stored = cluster.find(SECRET_KIND, MONITORING_NAMESPACE, ALERTMANAGER_SECRET)
    doc = yaml.safe_load(base64.b64decode(stored["data"][ALERTMANAGER_SECRET_KEY]))
    assert doc["receivers"] == [{"name": "null"}]
