"""Tests for monitoring-lifecycle."""
