"""Shared fixtures for the RingVault test suite."""
import os

import pytest

from ringvault.audit import AuditTrail, MemoryAuditSink
from ringvault.keys import KeyVisibilityEngine
from ringvault.rings import RingRegistry
from ringvault.roles import RoleResolver
from ringvault.store import MemoryDocumentStore
from ringvault.vault.config import VaultConfig
from ringvault.vault.disclosure import DisclosureEngine

BOOTSTRAP = "root@example.com"


@pytest.fixture
def master_keys():
    return {1: os.urandom(32), 2: os.urandom(32)}


@pytest.fixture
def config(master_keys):
    """Config with two key versions, v1 active."""
    return VaultConfig(
        master_keys=master_keys,
        active_key_id=1,
        bootstrap_identifier=BOOTSTRAP,
        store_timeout=1.0,
    )


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def sink():
    return MemoryAuditSink()


@pytest.fixture
def audit(sink, config):
    return AuditTrail(sink, maxsize=config.audit_queue_size)


@pytest.fixture
def registry(store, config):
    return RingRegistry(store, config)


@pytest.fixture
def resolver(registry, store):
    return RoleResolver(registry, store)


@pytest.fixture
def engine(registry, resolver, store, audit):
    return KeyVisibilityEngine(registry, resolver, store, audit)


@pytest.fixture
def disclosure(config):
    return DisclosureEngine(config)
