"""
Pytest configuration and fixtures for Cipherlink tests.

Created by orpheus497

Provides identities, established session pairs, fake proof engines and
an in-memory transport for unit and integration tests.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Tuple

import pytest

from cipherlink import x3dh
from cipherlink.identity import IdentityManager
from cipherlink.proofs import Proof, generate_proof_id
from cipherlink.ratchet import RatchetSession, RatchetSettings
from cipherlink.session import MemoryPersistentStore, SessionManager


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="cipherlink_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def make_identity_manager(curve: str = "x25519", identity_file=None) -> IdentityManager:
    manager = IdentityManager(identity_file=identity_file, curve=curve)
    manager.create_identity()
    return manager


def make_session_pair(curve: str = "x25519",
                      settings: RatchetSettings = None) -> Tuple[RatchetSession, RatchetSession]:
    """Run a full handshake and return (initiator, responder) ratchet sessions."""
    alice_ids = make_identity_manager(curve)
    bob_ids = make_identity_manager(curve)

    bundle = bob_ids.publish_bundle(count=2)
    initiated = x3dh.initiate_session(alice_ids.identity, bundle)
    responded = x3dh.respond(bob_ids, initiated.prekey_message)

    alice = RatchetSession.initialize(
        initiated.shared_secret,
        initiated.associated_data,
        initiated.local_ratchet_key,
        initiated.remote_ratchet_key,
        initiator=True,
        peer_id=bob_ids.identity.uid,
        local_id=alice_ids.identity.uid,
        settings=settings,
    )
    bob = RatchetSession.initialize(
        responded.shared_secret,
        responded.associated_data,
        responded.local_ratchet_key,
        responded.remote_ratchet_key,
        initiator=False,
        peer_id=alice_ids.identity.uid,
        local_id=bob_ids.identity.uid,
        settings=settings,
    )
    return alice, bob


@pytest.fixture
def alice_ids() -> IdentityManager:
    return make_identity_manager()


@pytest.fixture
def bob_ids() -> IdentityManager:
    return make_identity_manager()


@pytest.fixture
def session_pair() -> Tuple[RatchetSession, RatchetSession]:
    """Established (initiator, responder) sessions on X25519."""
    return make_session_pair()


@pytest.fixture
def session_pair_factory():
    """Factory for session pairs with a chosen curve or ratchet settings."""
    return make_session_pair


@pytest.fixture
def identity_factory():
    """Factory for identity managers holding a fresh identity."""
    return make_identity_manager


class RecordingProofEngine:
    """Proof engine that succeeds and remembers what it was asked for."""

    def __init__(self, verifies: bool = True):
        self.verifies = verifies
        self.requests: List[Tuple[str, Dict[str, str]]] = []

    async def generate_proof(self, circuit_name: str, inputs: Dict[str, str]) -> Proof:
        self.requests.append((circuit_name, inputs))
        return Proof(generate_proof_id(), circuit_name, dict(inputs), proof_data={"pi_a": []})

    async def verify_proof(self, proof: Proof) -> bool:
        return self.verifies


class FailingProofEngine:
    """Proof engine whose prover always crashes."""

    async def generate_proof(self, circuit_name: str, inputs: Dict[str, str]) -> Proof:
        raise RuntimeError("witness generation failed")

    async def verify_proof(self, proof: Proof) -> bool:
        return False


class SlowProofEngine:
    """Proof engine that never answers within a short timeout."""

    def __init__(self, delay: float = 5.0):
        self.delay = delay

    async def generate_proof(self, circuit_name: str, inputs: Dict[str, str]) -> Proof:
        await asyncio.sleep(self.delay)
        return Proof(generate_proof_id(), circuit_name, dict(inputs))

    async def verify_proof(self, proof: Proof) -> bool:
        return True


class LoopbackTransport:
    """Transport that queues frames per recipient instead of sending them."""

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.outbox: Dict[str, List[bytes]] = {}

    def send(self, peer_id: str, data: bytes) -> bool:
        self.outbox.setdefault(peer_id, []).append(data)
        return self.deliver

    def drain(self, peer_id: str) -> List[bytes]:
        return self.outbox.pop(peer_id, [])


@pytest.fixture
def recording_engine() -> RecordingProofEngine:
    return RecordingProofEngine()


@pytest.fixture
def rejecting_engine() -> RecordingProofEngine:
    return RecordingProofEngine(verifies=False)


@pytest.fixture
def failing_engine() -> FailingProofEngine:
    return FailingProofEngine()


@pytest.fixture
def slow_engine() -> SlowProofEngine:
    return SlowProofEngine()


@pytest.fixture
def manager_pair(alice_ids, bob_ids):
    """
    Two SessionManagers sharing a loopback transport, with persistence.

    Returns:
        Tuple of (alice, bob, transport); peers are addressed by identity uid
    """
    transport = LoopbackTransport()
    alice = SessionManager(alice_ids, transport=transport, persistent_store=MemoryPersistentStore())
    bob = SessionManager(bob_ids, transport=transport, persistent_store=MemoryPersistentStore())
    return alice, bob, transport


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "test_session" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
