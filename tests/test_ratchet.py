"""
Cipherlink - Double Ratchet tests.

Created by orpheus497

Tests key agreement between ratchet sessions, out-of-order delivery,
the skip bound, key rotation, forward secrecy, termination and
state serialization.
"""

import dataclasses
import json
import time

import pytest

from cipherlink import crypto
from cipherlink.constants import RATCHET_MAX_RETAINED_KEYS
from cipherlink.errors import (
    CryptoError,
    DecryptionFailed,
    ErrorCode,
    MessageKeyExhausted,
    RatchetError,
    TooManySkippedMessages,
)
from cipherlink.ratchet import (
    RatchetHeader,
    RatchetSession,
    RatchetSettings,
    RatchetState,
    SessionPhase,
    SkippedKeyCache,
)
from cipherlink.utils import is_zeroed


def exchange(sender: RatchetSession, receiver: RatchetSession) -> bytes:
    """Send one message key across and check both sides agree."""
    message_key, header = sender.send_key()
    assert receiver.receive_key(header) == message_key
    return message_key


class TestRatchetRoundTrip:
    """Test basic agreement between the two sides."""

    def test_initiator_sends_first(self, session_pair):
        alice, bob = session_pair

        exchange(alice, bob)
        exchange(alice, bob)

        assert alice.state.send_message_number == 2
        assert bob.state.receive_message_number == 2

    def test_responder_sends_first(self, session_pair):
        """Test the responder can send before it has heard from the initiator."""
        alice, bob = session_pair

        exchange(bob, alice)
        exchange(alice, bob)

    def test_alternating_conversation(self, session_pair):
        alice, bob = session_pair
        keys = set()

        for _ in range(5):
            keys.add(exchange(alice, bob))
            keys.add(exchange(alice, bob))
            keys.add(exchange(bob, alice))

        assert len(keys) == 15

    def test_reply_performs_dh_step(self, session_pair):
        """Test each change of direction introduces a fresh ratchet key."""
        alice, bob = session_pair
        exchange(alice, bob)
        first_bob_key = bob.state.sending_ratchet_key.public_bytes()

        _, header = bob.send_key()
        assert header.ratchet_public_key != first_bob_key
        alice.receive_key(header)

        _, alice_header = alice.send_key()
        assert alice.state.receiving_ratchet_key == header.ratchet_public_key
        assert alice_header.previous_chain_length == 1
        assert alice_header.message_number == 0

    def test_x448_round_trip(self, session_pair_factory):
        alice, bob = session_pair_factory("x448")

        exchange(alice, bob)
        exchange(bob, alice)
        exchange(alice, bob)

    def test_phase_transitions(self, session_pair):
        alice, bob = session_pair
        assert alice.phase == SessionPhase.ESTABLISHED

        message_key, header = alice.send_key()
        assert alice.phase == SessionPhase.SENDING

        bob.receive_key(header)
        assert bob.phase == SessionPhase.RECEIVING

    def test_invalid_shared_secret(self, session_pair):
        alice, _ = session_pair

        with pytest.raises(CryptoError):
            RatchetSession.initialize(
                b"short", b"", alice.state.sending_ratchet_key, b"\x00" * 32, initiator=True
            )


class TestOutOfOrder:
    """Test skipped message keys."""

    def test_out_of_order_delivery(self, session_pair):
        """Test messages delivered 3, 1, 2 all decrypt and keys are single use."""
        alice, bob = session_pair
        sent = [alice.send_key() for _ in range(3)]

        assert bob.receive_key(sent[2][1]) == sent[2][0]
        assert len(bob.state.skipped_keys) == 2
        assert bob.receive_key(sent[0][1]) == sent[0][0]
        assert bob.receive_key(sent[1][1]) == sent[1][0]
        assert len(bob.state.skipped_keys) == 0

        with pytest.raises(MessageKeyExhausted):
            bob.receive_key(sent[1][1])

    def test_late_messages_across_dh_step(self, session_pair):
        """Test messages from a previous chain still decrypt after a ratchet step."""
        alice, bob = session_pair
        sent = [alice.send_key() for _ in range(3)]
        assert bob.receive_key(sent[0][1]) == sent[0][0]

        exchange(bob, alice)
        new_key, new_header = alice.send_key()
        assert new_header.previous_chain_length == 3

        assert bob.receive_key(new_header) == new_key
        assert bob.receive_key(sent[2][1]) == sent[2][0]
        assert bob.receive_key(sent[1][1]) == sent[1][0]

    def test_skip_bound(self, session_pair_factory):
        """Test a gap above max_skip is rejected without touching state."""
        alice, bob = session_pair_factory(settings=RatchetSettings(max_skip=5))
        sent = [alice.send_key() for _ in range(7)]

        with pytest.raises(TooManySkippedMessages) as exc_info:
            bob.receive_key(sent[6][1])

        assert exc_info.value.code == ErrorCode.E109_TOO_MANY_SKIPPED
        assert bob.state.receive_message_number == 0
        assert len(bob.state.skipped_keys) == 0
        assert bob.receive_key(sent[5][1]) == sent[5][0]

    def test_evicted_key_is_exhausted(self, session_pair_factory):
        """Test the oldest skipped keys are evicted when the cache is full."""
        alice, bob = session_pair_factory(
            settings=RatchetSettings(max_skip=10, max_skipped_keys=2)
        )
        sent = [alice.send_key() for _ in range(5)]

        bob.receive_key(sent[4][1])

        assert len(bob.state.skipped_keys) == 2
        with pytest.raises(MessageKeyExhausted):
            bob.receive_key(sent[0][1])
        assert bob.receive_key(sent[3][1]) == sent[3][0]

    def test_negative_message_number(self, session_pair):
        alice, bob = session_pair

        with pytest.raises(DecryptionFailed):
            bob.receive_key(RatchetHeader(
                alice.state.sending_ratchet_key.public_bytes(), -1, 0,
                bob.state.sending_ratchet_key.public_bytes(),
            ))

    def test_garbage_ratchet_key(self, session_pair):
        _, bob = session_pair
        reference = bob.state.sending_ratchet_key.public_bytes()

        with pytest.raises(DecryptionFailed):
            bob.receive_key(RatchetHeader(b"\x01" * 5, 0, 0, reference))

    def test_unknown_reference_key(self, session_pair):
        """Test a header naming a ratchet key we never had is refused."""
        alice, bob = session_pair
        alice.rotate()
        message_key, header = alice.send_key()
        stranger = crypto.KeyPair(bob.state.backend).public_bytes()
        before = bob.to_dict()

        trial = bob.fork()
        with pytest.raises(DecryptionFailed):
            trial.receive_key(dataclasses.replace(header, peer_ratchet_key=stranger))

        assert bob.to_dict() == before
        assert bob.receive_key(header) == message_key



class TestRotation:
    """Test proactive rotation of the sending ratchet key."""

    def test_manual_rotation(self, session_pair):
        alice, bob = session_pair
        exchange(alice, bob)
        old_key = alice.state.sending_ratchet_key.public_bytes()

        event = alice.rotate()

        assert event.index == 1
        assert event.previous_chain_length == 1
        assert event.old_commitment != event.new_commitment
        assert alice.state.sending_ratchet_key.public_bytes() != old_key
        assert alice.pop_rotation_events() == [event]
        assert alice.pop_rotation_events() == []
        exchange(alice, bob)

    def test_repeated_one_way_rotation(self, session_pair):
        """Test the peer follows several rotations without replying."""
        alice, bob = session_pair

        for _ in range(3):
            exchange(alice, bob)
            alice.rotate()
        exchange(alice, bob)
        exchange(bob, alice)

        assert alice.state.rotation_count == 3

    def test_back_to_back_rotation(self, session_pair):
        """Test rotating twice with no message in between."""
        alice, bob = session_pair
        exchange(alice, bob)

        alice.rotate()
        alice.rotate()

        # The first rotation was never announced, so only its replacement is kept
        assert len(alice.state.ratchet_key_history) == 2
        exchange(alice, bob)
        exchange(bob, alice)
        exchange(alice, bob)
        assert alice.state.rotation_count == 2

    def test_rotation_then_reply_before_sending(self, session_pair):
        """Test an unannounced rotation is redone against a newly received key."""
        alice, bob = session_pair
        exchange(alice, bob)
        alice.rotate()

        exchange(bob, alice)
        exchange(alice, bob)
        exchange(bob, alice)

    def test_threshold_rotation_racing_reply(self, session_pair_factory):
        """Test a reply and an automatic rotation crossing in flight."""
        alice, bob = session_pair_factory(settings=RatchetSettings(rotation_threshold=2))
        exchange(alice, bob)
        exchange(alice, bob)

        reply_key, reply = bob.send_key()
        third_key, third = alice.send_key()
        assert alice.state.rotation_count == 1

        assert bob.receive_key(third) == third_key
        assert alice.receive_key(reply) == reply_key

        for _ in range(3):
            exchange(alice, bob)
            exchange(bob, alice)

    def test_manual_rotation_racing_reply(self, session_pair):
        alice, bob = session_pair
        exchange(alice, bob)

        reply_key, reply = bob.send_key()
        alice.rotate()
        rotated_key, rotated = alice.send_key()

        assert alice.receive_key(reply) == reply_key
        assert bob.receive_key(rotated) == rotated_key
        exchange(bob, alice)
        exchange(alice, bob)

    def test_history_pruned_when_peer_moves_on(self, session_pair):
        alice, bob = session_pair
        alice.rotate()
        exchange(alice, bob)
        current = alice.state.sending_ratchet_key.public_bytes()

        exchange(bob, alice)

        assert list(alice.state.ratchet_key_history) == [current]

    def test_history_is_bounded(self, session_pair):
        alice, bob = session_pair

        for _ in range(RATCHET_MAX_RETAINED_KEYS + 3):
            alice.rotate()
            exchange(alice, bob)

        assert len(alice.state.ratchet_key_history) == RATCHET_MAX_RETAINED_KEYS
        assert alice.get_stats()["retained_ratchet_keys"] == RATCHET_MAX_RETAINED_KEYS
        exchange(bob, alice)
        exchange(alice, bob)


    def test_threshold_rotation(self, session_pair_factory):
        alice, bob = session_pair_factory(settings=RatchetSettings(rotation_threshold=3))
        headers = []

        for _ in range(4):
            message_key, header = alice.send_key()
            headers.append(header)
            assert bob.receive_key(header) == message_key

        assert headers[3].ratchet_public_key != headers[2].ratchet_public_key
        assert headers[3].previous_chain_length == 3
        assert alice.state.rotation_count == 1
        assert len(alice.pop_rotation_events()) == 1

    def test_rotation_disabled(self, session_pair_factory):
        alice, bob = session_pair_factory(settings=RatchetSettings(rotation_threshold=0))

        for _ in range(10):
            exchange(alice, bob)

        assert alice.state.rotation_count == 0


class TestForwardSecrecy:
    """Test that used key material is gone."""

    def test_chain_keys_are_zeroed_after_use(self, session_pair):
        alice, bob = session_pair
        old_send_chain = alice.state.sending_chain_key
        old_receive_chain = bob.state.receiving_chain_key

        exchange(alice, bob)

        assert is_zeroed(old_send_chain)
        assert is_zeroed(old_receive_chain)

    def test_chain_derivation_is_one_way(self, session_pair):
        """Test a chain key never reproduces a key derived before it."""
        alice, _ = session_pair
        chain_key = bytes(alice.state.sending_chain_key)
        earlier = set()

        for _ in range(20):
            next_chain, message_key = RatchetSession._kdf_ck(chain_key)
            assert message_key not in earlier
            assert bytes(next_chain) not in earlier
            earlier.update({message_key, chain_key})
            chain_key = bytes(next_chain)

    def test_terminate_zeroes_keys(self, session_pair):
        alice, bob = session_pair
        exchange(alice, bob)
        sending_root = alice.state.sending_root_key
        receiving_root = alice.state.receiving_root_key
        sending = alice.state.sending_chain_key
        receiving = alice.state.receiving_chain_key

        alice.terminate()

        assert alice.phase == SessionPhase.TERMINATED
        assert is_zeroed(sending_root) and is_zeroed(receiving_root)
        assert is_zeroed(sending) and is_zeroed(receiving)
        assert alice.state.sending_ratchet_key is None
        assert len(alice.state.ratchet_key_history) == 0
        with pytest.raises(RatchetError) as exc_info:
            alice.send_key()
        assert exc_info.value.code == ErrorCode.E302_SESSION_TERMINATED

        alice.terminate()

    def test_uninitialized_session_refuses_work(self):
        session = RatchetSession(RatchetState())

        with pytest.raises(RatchetError) as exc_info:
            session.send_key()

        assert exc_info.value.code == ErrorCode.E305_INVALID_STATE


class TestTransactions:
    """Test fork and commit."""

    def test_failed_trial_leaves_state_untouched(self, session_pair):
        alice, bob = session_pair
        message_key, header = alice.send_key()
        before = bob.to_dict()

        trial = bob.fork()
        assert trial.receive_key(header) == message_key

        assert bob.to_dict() == before
        bob.commit(trial)
        assert bob.state.receive_message_number == 1


class TestSerialization:
    """Test ratchet state export and import."""

    def test_round_trip(self, session_pair):
        alice, bob = session_pair
        exchange(alice, bob)
        exchange(bob, alice)
        pending = [alice.send_key() for _ in range(3)]
        bob.receive_key(pending[2][1])

        data = json.loads(json.dumps(bob.to_dict()))
        restored = RatchetSession.from_dict(data)

        assert restored.to_dict() == bob.to_dict()
        assert restored.receive_key(pending[0][1]) == pending[0][0]
        exchange(restored, alice)

    def test_round_trip_with_unannounced_rotation(self, session_pair):
        alice, bob = session_pair
        exchange(alice, bob)
        alice.rotate()

        restored = RatchetSession.from_dict(json.loads(json.dumps(alice.to_dict())))
        restored.rotate()

        exchange(restored, bob)
        exchange(bob, restored)


    def test_restore_keeps_cache_limits(self, session_pair_factory):
        _, bob = session_pair_factory(settings=RatchetSettings(max_skipped_keys=7))

        restored = RatchetSession.from_dict(bob.to_dict())

        assert restored.state.skipped_keys.max_entries == 7

    def test_invalid_state(self):
        with pytest.raises(RatchetError) as exc_info:
            RatchetState.from_dict({"curve": "x25519"})

        assert exc_info.value.code == ErrorCode.E303_SESSION_LOAD_FAILED

    def test_stats(self, session_pair):
        alice, bob = session_pair
        exchange(alice, bob)

        stats = alice.get_stats()

        assert stats["send_message_number"] == 1
        assert stats["phase"] == "SENDING"
        assert stats["curve"] == "x25519"


class TestSkippedKeyCache:
    """Test the bounded skipped-key cache."""

    def test_oldest_first_eviction(self):
        cache = SkippedKeyCache(max_entries=3)

        evicted = sum(cache.put(b"k", n, bytes([n]) * 32) for n in range(5))

        assert evicted == 2
        assert len(cache) == 3
        assert (b"k", 0) not in cache and (b"k", 1) not in cache
        assert cache.take(b"k", 4) == bytes([4]) * 32

    def test_take_is_single_use(self):
        cache = SkippedKeyCache()
        cache.put(b"k", 0, b"\x01" * 32)

        assert cache.take(b"k", 0) == b"\x01" * 32
        assert cache.take(b"k", 0) is None

    def test_expired_entries(self):
        cache = SkippedKeyCache(ttl=60)
        now = time.time()
        cache.put(b"k", 0, b"\x01" * 32, timestamp=now - 120)
        cache.put(b"k", 1, b"\x02" * 32, timestamp=now - 120)
        cache.put(b"k", 2, b"\x03" * 32, timestamp=now)

        assert cache.take(b"k", 0, now=now) is None
        assert cache.purge_expired(now=now) == 1
        assert len(cache) == 1

    def test_copy_is_independent(self):
        cache = SkippedKeyCache()
        cache.put(b"k", 0, b"\x01" * 32)

        clone = cache.copy()
        clone.take(b"k", 0)

        assert len(cache) == 1
        assert len(clone) == 0

    def test_wipe(self):
        cache = SkippedKeyCache()
        cache.put(b"k", 0, b"\x01" * 32)

        cache.wipe()

        assert len(cache) == 0


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
