# tests/fixtures/__init__.py
"""Shared test doubles and builders.

- checkpoints: artifact files and hand-built manifests on disk
- sessions: FakeProcess / FakeSession doubles for supervision tests
"""
