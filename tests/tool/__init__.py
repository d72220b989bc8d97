"""Tests for the monitoring-lifecycle command line tool."""
