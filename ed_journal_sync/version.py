"""Centralized package metadata."""

from __future__ import annotations


PACKAGE_VERSION = "0.3.0"
PACKAGE_NAME = "ed-journal-sync"
