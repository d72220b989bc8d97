"""Library for editing the alert routing configuration of Alertmanager.

The configuration lives as a YAML document under a key of a kubernetes
Secret. The edits here add a webhook receiver and a route that selects it,
leaving every other part of the document as it was:
```python
document = await secret.patch(
    lambda blob: apply_receiver_edit(blob, "http://10.0.0.1:30080/")
)
```

Both edits are idempotent: applying the same edit again replaces the entry
produced by the first edit rather than adding a duplicate.
"""

import base64
import binascii
from collections.abc import Callable
import copy
import logging
from typing import Any

import yaml

from .exceptions import DecodeError, StructuralEditError
from .manifest import NamedResource, SECRET_KIND
from .resources import ResourceClient

__all__ = [
    "apply_receiver_edit",
    "apply_route_edit",
    "decode_document",
    "encode_document",
    "AlertConfigSecret",
]

_LOGGER = logging.getLogger(__name__)


WEBHOOK_RECEIVER_NAME = "webhook-receiver"
DEFAULT_GROUP_WAIT = "5s"
DEFAULT_GROUP_INTERVAL = "10s"
DEFAULT_REPEAT_INTERVAL = "1m"


def decode_document(blob: bytes) -> dict[str, Any]:
    """Decode an alert configuration document."""
    try:
        doc = yaml.safe_load(blob.decode("utf-8"))
    except UnicodeDecodeError as err:
        raise DecodeError(f"Alert configuration is not valid UTF-8: {err}") from err
    except yaml.YAMLError as err:
        raise DecodeError(f"Alert configuration is not valid YAML: {err}") from err
    if not isinstance(doc, dict):
        raise DecodeError(
            f"Alert configuration must be a mapping, got {type(doc).__name__}"
        )
    return doc


def encode_document(doc: dict[str, Any]) -> bytes:
    """Encode an alert configuration document, keeping the order of its keys."""
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False).encode(
        "utf-8"
    )


def _receivers(doc: dict[str, Any]) -> list[Any]:
    if (receivers := doc.get("receivers")) is None:
        receivers = doc["receivers"] = []
    if not isinstance(receivers, list):
        raise StructuralEditError(
            f"Alert configuration receivers must be a list, got {type(receivers).__name__}"
        )
    return receivers


def _routes(doc: dict[str, Any]) -> list[Any]:
    if not isinstance(route := doc.get("route"), dict):
        raise StructuralEditError("Alert configuration has no top level route")
    if (routes := route.get("routes")) is None:
        routes = route["routes"] = []
    if not isinstance(routes, list):
        raise StructuralEditError(
            f"Alert configuration routes must be a list, got {type(routes).__name__}"
        )
    return routes


def _upsert(entries: list[Any], entry: dict[str, Any], key: str) -> None:
    """Replace the entry with the same key value in place, or append it."""
    for i, existing in enumerate(entries):
        if isinstance(existing, dict) and existing.get(key) == entry[key]:
            entries[i] = entry
            return
    entries.append(entry)


def _webhook_urls(receiver: dict[str, Any]) -> list[str]:
    return [
        config.get("url")
        for config in receiver.get("webhook_configs") or []
        if isinstance(config, dict)
    ]


def apply_receiver_edit(
    document: bytes,
    target_url: str,
    receiver_name: str = WEBHOOK_RECEIVER_NAME,
) -> bytes:
    """Add a webhook receiver delivering to `target_url`.

    A receiver with the same name is replaced where it stands; all other
    receivers are left untouched.
    """
    doc = decode_document(document)
    receivers = _receivers(doc)
    _upsert(
        receivers,
        {
            "name": receiver_name,
            "webhook_configs": [
                {
                    "url": target_url,
                    "send_resolved": False,
                }
            ],
        },
        "name",
    )
    _LOGGER.debug("Receiver %s now delivers to %s", receiver_name, target_url)
    return encode_document(doc)


def apply_route_edit(
    document: bytes,
    target_url: str,
    receiver_name: str = WEBHOOK_RECEIVER_NAME,
    matchers: list[str] | None = None,
) -> bytes:
    """Add a route sending alerts to the webhook receiver for `target_url`.

    The receiver must already be defined and deliver to `target_url`. A route
    for the same receiver is replaced where it stands.
    """
    doc = decode_document(document)
    receiver = next(
        (
            r
            for r in _receivers(doc)
            if isinstance(r, dict) and r.get("name") == receiver_name
        ),
        None,
    )
    if receiver is None:
        raise StructuralEditError(
            f"Alert configuration has no receiver {receiver_name} to route to"
        )
    if target_url not in _webhook_urls(receiver):
        raise StructuralEditError(
            f"Receiver {receiver_name} does not deliver to {target_url}"
        )
    route: dict[str, Any] = {"receiver": receiver_name}
    if matchers:
        route["matchers"] = list(matchers)
    route.update(
        {
            "group_wait": DEFAULT_GROUP_WAIT,
            "group_interval": DEFAULT_GROUP_INTERVAL,
            "repeat_interval": DEFAULT_REPEAT_INTERVAL,
        }
    )
    _upsert(_routes(doc), route, "receiver")
    _LOGGER.debug("Route to receiver %s with matchers %s", receiver_name, matchers)
    return encode_document(doc)


class AlertConfigSecret:
    """Read-modify-write access to the alert configuration held in a Secret.

    Every call to `patch` fetches the live Secret, so edits made by other steps
    in between are never lost to a stale copy.
    """

    def __init__(
        self, resources: ResourceClient, namespace: str, name: str, key: str
    ) -> None:
        """Initialize AlertConfigSecret."""
        self._resources = resources
        self._resource_id = NamedResource(SECRET_KIND, namespace, name)
        self._key = key

    @property
    def resource_id(self) -> NamedResource:
        return self._resource_id

    async def read(self) -> bytes:
        """Return the current encoded alert configuration document."""
        return self._document(await self._fetch())

    async def _fetch(self) -> dict[str, Any]:
        return await self._resources.get(
            SECRET_KIND, self._resource_id.namespace, self._resource_id.name
        )

    def _document(self, secret: dict[str, Any]) -> bytes:
        data = secret.get("data") or {}
        if self._key not in data:
            raise StructuralEditError(
                f"Secret {self._resource_id.namespaced_name} has no key {self._key}"
            )
        try:
            return base64.b64decode(data[self._key], validate=True)
        except (binascii.Error, ValueError) as err:
            raise DecodeError(
                f"Secret {self._resource_id.namespaced_name} key {self._key} is not valid base64"
            ) from err

    async def patch(self, edit: Callable[[bytes], bytes]) -> dict[str, Any]:
        """Fetch the Secret, apply `edit` to the document and write it back.

        Nothing is written when the edit fails. Returns the updated Secret.
        """
        secret = await self._fetch()
        updated = edit(self._document(secret))
        # Fail before writing if the edit produced something unreadable
        decode_document(updated)
        secret = copy.deepcopy(secret)
        secret.setdefault("data", {})[self._key] = base64.b64encode(updated).decode(
            "ascii"
        )
        _LOGGER.info("Writing alert configuration %s", self._resource_id)
        return await self._resources.replace(secret)
