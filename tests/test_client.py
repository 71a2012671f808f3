__copyright__ = """
    Copyright 2020 EPFL

    Licensed under the Apache License, Version 2.0 (the "License");
    you may not use this file except in compliance with the License.
    You may obtain a copy of the License at

        http://www.apache.org/licenses/LICENSE-2.0

    Unless required by applicable law or agreed to in writing, software
    distributed under the License is distributed on an "AS IS" BASIS,
    WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
    See the License for the specific language governing permissions and
    limitations under the License.
"""
__license__ = "Apache 2.0"

import pytest

from ssev.config import Intensity, SystemParams
from ssev.epochs import ChunkInterval
from ssev.errors import TransportError
from ssev.protocols.client import (
    ContactTracer,
    ExposureVerdict,
    Match,
    decode_metadata,
    encode_metadata,
)
from ssev.protocols.keys import DiagnosisKey, decrypt_aem, derive_rpi
from ssev.protocols.server import Chunk, DiagnosisServer


TEK_A = bytes.fromhex("75c734c6dd1a782de7a965da5eb93125")
TEK_B = bytes.fromhex("66687aadf862bd776c8fc18b8e9f8e20")

PARAMS = SystemParams(hop_limit=1, tek_rolling_period=4, relevance_window=3)
PARAMS_TWO_HOPS = SystemParams(hop_limit=2, tek_rolling_period=4, relevance_window=3)

START_TIME = 1000.0


def make_server(params=PARAMS):
    return DiagnosisServer(params, start_time=START_TIME)


def seal(server):
    """Seal the open chunk of the server"""
    return server.advance_chunk_interval(server.open_interval.end)


def advance(tracers, epoch):
    for tracer in tracers:
        while tracer.current_epoch < epoch:
            tracer.next_epoch()


def meet(first, second, epoch, intensity=Intensity.HIGH_RISK):
    """Let first and second observe each other's beacons"""
    advance([first, second], epoch)
    second.record_encounter(*first.beacon(intensity), epoch, peer_id=first.participant_id)
    first.record_encounter(*second.beacon(intensity), epoch, peer_id=second.participant_id)


class FlakyServer:
    """Forwards to a server unless failing is set"""

    def __init__(self, server):
        self.server = server
        self.failing = False

    def _check(self):
        if self.failing:
            raise TransportError("connection reset")

    def upload_diagnosis_keys(self, participant_id, keys):
        self._check()
        return self.server.upload_diagnosis_keys(participant_id, keys)

    def list_chunks(self, since_index=0):
        self._check()
        return self.server.list_chunks(since_index)

    def fetch_chunk(self, index):
        self._check()
        return self.server.fetch_chunk(index)


################################
### TEST IDENTIFIER ROTATION ###
################################


def test_tek_rotates_on_rolling_boundary():
    teks = iter([TEK_A, TEK_B])
    tracer = ContactTracer("alice", PARAMS, make_server(), 10, tek_source=lambda: next(teks))
    assert tracer.keys == {8: TEK_A}
    assert tracer.current_rpi == derive_rpi(TEK_A, 10)

    tracer.next_epoch()
    assert tracer.current_epoch == 11
    assert tracer.current_rpi == derive_rpi(TEK_A, 11)

    tracer.next_epoch()
    assert tracer.keys == {8: TEK_A, 12: TEK_B}
    assert tracer.current_tek == TEK_B
    assert tracer.current_rpi == derive_rpi(TEK_B, 12)


def test_old_teks_are_dropped():
    tracer = ContactTracer("alice", PARAMS, make_server(), 10)
    advance([tracer], 20)
    assert sorted(tracer.keys) == [12, 16, 20]


def test_expired_encounters_and_keys_are_dropped():
    server = make_server()
    bob = ContactTracer("bob", PARAMS, server, 8)
    stale_rpi = derive_rpi(TEK_A, 9)
    bob.record_encounter(stale_rpi, None, 9)

    server.upload_diagnosis_keys("alice", [DiagnosisKey(TEK_A, 8, 4, 16)])
    seal(server)
    bob.poll()
    assert bob.verdict.warned

    # Oldest kept epoch is 12, the key's window ends at 15
    advance([bob], 21)
    bob.record_encounter(derive_rpi(TEK_B, 21), None, 21)
    assert [encounter.epoch for encounter in bob.encounters] == [21]
    assert stale_rpi not in bob._encounters_by_rpi
    assert len(bob._known_keys) == 1

    # Oldest kept epoch is 16
    advance([bob], 24)
    assert bob._known_keys == []
    assert [encounter.epoch for encounter in bob.encounters] == [21]

    # Matches stay
    assert bob.verdict.warned

    # Forgotten encounters cannot match again
    server.upload_diagnosis_keys("alice", [DiagnosisKey(TEK_A, 8, 4, 16)])
    seal(server)
    bob.poll()
    assert len(bob.verdict) == 1


def test_beacon_metadata():
    tracer = ContactTracer("alice", PARAMS, make_server(), 10)
    rpi, aem = tracer.beacon(Intensity.HIGH_RISK)
    assert rpi == tracer.current_rpi
    metadata = decrypt_aem(tracer.current_tek, 10, aem)
    assert metadata == encode_metadata(Intensity.HIGH_RISK)
    assert decode_metadata(metadata) is Intensity.HIGH_RISK


def test_decode_malformed_metadata():
    with pytest.raises(ValueError):
        decode_metadata(bytes.fromhex("00010000"))
    with pytest.raises(ValueError):
        decode_metadata(bytes.fromhex("4001"))


def test_duplicate_encounters_recorded_once():
    tracer = ContactTracer("bob", PARAMS, make_server(), 8)
    rpi = derive_rpi(TEK_A, 9)
    tracer.record_encounter(rpi, None, 9)
    tracer.record_encounter(rpi, None, 9)
    assert len(tracer.encounters) == 1


##########################
### TEST EXPOSURE FLOW ###
##########################


def test_direct_exposure():
    server = make_server()
    alice, bob, carol = (ContactTracer(name, PARAMS, server, 8) for name in "abc")

    meet(alice, bob, 9)
    advance([alice, bob, carol], 16)

    ack = alice.report_diagnosis()
    assert ack.report_id == 0
    seal(server)

    assert bob.poll() == 1
    assert carol.poll() == 1
    assert alice.poll() == 1

    assert bob.verdict.warned
    assert bob.verdict.risk is Intensity.HIGH_RISK
    [match] = bob.verdict.matches
    assert (match.epoch, match.hop, match.report_id, match.chunk_index) == (9, 0, 0, 0)

    assert not carol.verdict.warned
    assert carol.verdict.risk is None

    # Own keys never warn
    assert not alice.verdict.warned


def test_low_risk_exposure():
    server = make_server()
    alice, bob = (ContactTracer(name, PARAMS, server, 8) for name in "ab")

    meet(alice, bob, 9, Intensity.LOW_RISK)
    advance([alice, bob], 16)
    alice.report_diagnosis()
    seal(server)
    bob.poll()

    assert bob.verdict.risk is Intensity.LOW_RISK


def test_relevance_window_boundaries():
    server = make_server()
    bob = ContactTracer("bob", PARAMS, server, 4)

    # Diagnosis at 16: the window covers epochs 8 to 15
    bob.record_encounter(derive_rpi(TEK_A, 7), None, 7)
    bob.record_encounter(derive_rpi(TEK_A, 8), None, 8)
    bob.record_encounter(derive_rpi(TEK_B, 16), None, 16)

    server.upload_diagnosis_keys(
        "alice",
        [
            DiagnosisKey(TEK_A, 4, 4, 16),
            DiagnosisKey(TEK_A, 8, 4, 16),
            DiagnosisKey(TEK_B, 16, 4, 16),
        ],
    )
    seal(server)
    bob.poll()

    assert [match.epoch for match in bob.verdict.matches] == [8]


def test_observation_outside_window_is_ignored():
    server = make_server()
    bob = ContactTracer("bob", PARAMS, server, 40)

    # alice's identifier of epoch 10, replayed long after her window
    bob.record_encounter(derive_rpi(TEK_A, 10), None, 40)

    server.upload_diagnosis_keys("alice", [DiagnosisKey(TEK_A, 8, 4, 16)])
    seal(server)
    bob.poll()
    assert not bob.verdict.warned

    # Same for encounters recorded after the key was downloaded
    bob.record_encounter(derive_rpi(TEK_A, 11), None, 40)
    assert not bob.verdict.warned


def test_observation_before_window_start_is_ignored():
    server = make_server()
    bob = ContactTracer("bob", PARAMS, server, 4)

    # The identifier of epoch 8 lies in the window, the observation does not
    bob.record_encounter(derive_rpi(TEK_A, 8), None, 7)

    server.upload_diagnosis_keys("alice", [DiagnosisKey(TEK_A, 8, 4, 16)])
    seal(server)
    bob.poll()
    assert not bob.verdict.warned


@pytest.mark.parametrize(
    "tolerance,rpi_epoch,warned",
    [
        (0, 11, True),
        (0, 10, False),
        (1, 10, True),
        (1, 9, False),
        (2, 9, True),
    ],
)
def test_observed_epoch_tolerance(tolerance, rpi_epoch, warned):
    params = SystemParams(
        hop_limit=1, tek_rolling_period=4, relevance_window=3, epoch_tolerance=tolerance
    )
    server = make_server(params)
    early, late = (ContactTracer(name, params, server, 8) for name in ("bob", "carol"))

    early.record_encounter(derive_rpi(TEK_A, rpi_epoch), None, 11)
    server.upload_diagnosis_keys("alice", [DiagnosisKey(TEK_A, 8, 4, 16)])
    seal(server)
    early.poll()
    late.poll()
    late.record_encounter(derive_rpi(TEK_A, rpi_epoch), None, 11)

    for tracer in (early, late):
        assert tracer.verdict.warned is warned
        if warned:
            assert tracer.verdict.matches[0].epoch == rpi_epoch


def test_high_risk_observation_upgrades_match():
    server = make_server(PARAMS_TWO_HOPS)
    alice, bob = (ContactTracer(name, PARAMS_TWO_HOPS, server, 8) for name in "ab")

    advance([alice, bob], 9)
    bob.record_encounter(*alice.beacon(Intensity.LOW_RISK), 9)
    bob.record_encounter(*alice.beacon(Intensity.HIGH_RISK), 9)
    advance([alice, bob], 16)

    alice.report_diagnosis()
    seal(server)
    bob.poll()

    assert bob.verdict.risk is Intensity.HIGH_RISK
    [match] = bob.verdict.matches
    assert match.intensity is Intensity.HIGH_RISK

    # The verdict and the forwarding decision agree
    seal(server)
    assert server.list_chunks(1)[0].nr_keys == 1


def test_repeated_polling_is_idempotent():
    server = make_server()
    alice, bob = (ContactTracer(name, PARAMS, server, 8) for name in "ab")
    meet(alice, bob, 9)
    advance([alice, bob], 16)
    alice.report_diagnosis()
    seal(server)

    assert bob.poll() == 1
    assert bob.poll() == 0
    assert bob.next_chunk_index == 1

    bob.process_chunk(server.fetch_chunk(0))
    assert len(bob.verdict) == 1


def test_late_encounter_matches_known_keys():
    server = make_server()
    bob = ContactTracer("bob", PARAMS, server, 8)

    server.upload_diagnosis_keys("alice", [DiagnosisKey(TEK_A, 8, 4, 16)])
    seal(server)
    bob.poll()
    assert not bob.verdict.warned

    bob.record_encounter(derive_rpi(TEK_A, 10), None, 10)
    assert bob.verdict.warned
    assert bob.verdict.matches[0].epoch == 10


def test_transport_failure_during_polling():
    server = make_server()
    flaky = FlakyServer(server)
    bob = ContactTracer("bob", PARAMS, flaky, 8)
    bob.record_encounter(derive_rpi(TEK_A, 10), None, 10)

    server.upload_diagnosis_keys("alice", [DiagnosisKey(TEK_A, 8, 4, 16)])
    seal(server)

    flaky.failing = True
    assert bob.poll() == 0
    assert bob.next_chunk_index == 0
    assert not bob.verdict.warned

    flaky.failing = False
    assert bob.poll() == 1
    assert bob.verdict.warned


def test_malformed_key_is_skipped():
    bob = ContactTracer("bob", PARAMS, make_server(), 8)
    bob.record_encounter(derive_rpi(TEK_B, 10), None, 10)

    # Covers epoch 2**32, which has no RPI
    bad = DiagnosisKey(TEK_A, 2 ** 32 - 2, 4, 2 ** 32 + 2, report_id=0)
    good = DiagnosisKey(TEK_B, 8, 4, 16, report_id=1)
    bob.process_chunk(Chunk(ChunkInterval(0, START_TIME, 30), [bad, good], sealed=True))

    assert bob.verdict.warned
    assert bob.next_chunk_index == 1


######################
### TEST REPORTING ###
######################


def test_report_at_most_once():
    server = make_server()
    alice = ContactTracer("alice", PARAMS, server, 8)
    advance([alice], 16)

    ack = alice.report_diagnosis()
    assert ack.accepted == 3
    assert alice.reported
    assert alice.report_diagnosis() is None

    seal(server)
    assert server.list_chunks()[0].nr_keys == 3


def test_report_in_the_future():
    alice = ContactTracer("alice", PARAMS, make_server(), 8)
    with pytest.raises(ValueError):
        alice.report_diagnosis(9)
    assert not alice.reported


def test_report_without_keys():
    alice = ContactTracer("alice", PARAMS, make_server(), 40)
    with pytest.raises(ValueError):
        alice.report_diagnosis(10)


def test_tracing_keys_cover_relevance_window():
    alice = ContactTracer("alice", PARAMS, make_server(), 8)
    advance([alice], 17)
    keys = alice.tracing_keys(16)
    assert [key.rolling_start for key in keys] == [8, 12, 16]
    assert all(key.diagnosis_epoch == 16 and key.hop == 0 for key in keys)


def test_report_transport_failure():
    flaky = FlakyServer(make_server())
    alice = ContactTracer("alice", PARAMS, flaky, 8)
    flaky.failing = True
    with pytest.raises(TransportError):
        alice.report_diagnosis()
    assert not alice.reported

    flaky.failing = False
    assert alice.report_diagnosis() is not None


#######################
### TEST FORWARDING ###
#######################


def test_forwarding_reaches_event_attendees():
    server = make_server(PARAMS_TWO_HOPS)
    names = ["alice", "bob", "carol", "dave", "erin", "frank"]
    alice, bob, carol, dave, erin, frank = (
        ContactTracer(name, PARAMS_TWO_HOPS, server, 8) for name in names
    )
    everybody = [alice, bob, carol, dave, erin, frank]

    # Event at epoch 9, attended by alice, bob and carol
    meet(alice, bob, 9)
    meet(bob, carol, 9)
    meet(bob, frank, 9, Intensity.LOW_RISK)
    # Later contacts, after the event
    meet(carol, dave, 10)
    meet(bob, erin, 10)
    advance(everybody, 16)

    alice.report_diagnosis()
    seal(server)

    bob.poll()
    assert bob.verdict.matches[0].hop == 0

    # bob forwarded its TEK for the event epoch
    seal(server)
    [forwarded] = server.fetch_chunk(1).keys
    assert forwarded.hop == 1
    assert forwarded.report_id == 0
    assert forwarded.epochs == (9,)
    assert forwarded.diagnosis_epoch == 16

    for tracer in everybody:
        tracer.poll()

    [match] = carol.verdict.matches
    assert (match.epoch, match.hop, match.report_id) == (9, 1, 0)

    assert not dave.verdict.warned
    assert not erin.verdict.warned
    assert not frank.verdict.warned
    assert not alice.verdict.warned

    # Nobody forwards beyond the hop limit, and bob forwards only once
    seal(server)
    assert server.list_chunks(2)[0].nr_keys == 0


def test_forwarding_disabled_with_one_hop():
    server = make_server()
    alice, bob = (ContactTracer(name, PARAMS, server, 8) for name in "ab")
    meet(alice, bob, 9)
    advance([alice, bob], 16)
    alice.report_diagnosis()
    seal(server)
    bob.poll()
    seal(server)

    assert server.list_chunks(1)[0].nr_keys == 0


def test_failed_forward_is_retried():
    server = make_server(PARAMS_TWO_HOPS)
    flaky = FlakyServer(server)
    alice = ContactTracer("alice", PARAMS_TWO_HOPS, server, 8)
    bob = ContactTracer("bob", PARAMS_TWO_HOPS, flaky, 8)
    meet(alice, bob, 9)
    advance([alice, bob], 16)
    alice.report_diagnosis()
    seal(server)

    # The forward fails after the chunk was processed
    bob.process_chunk(server.fetch_chunk(0))
    flaky.failing = True
    bob.poll()
    flaky.failing = False
    seal(server)
    assert server.list_chunks(1)[0].nr_keys == 0

    bob.poll()
    seal(server)
    assert server.list_chunks(2)[0].nr_keys == 1


##########################
### TEST VERDICT STATE ###
##########################


def test_verdict_deduplicates_matches():
    verdict = ExposureVerdict("bob")
    match = Match(9, Intensity.LOW_RISK, TEK_A, 0, 0, 16, 0)
    assert verdict.add(match)
    assert not verdict.add(Match(9, Intensity.LOW_RISK, TEK_A, 0, 0, 16, 3))
    assert verdict.add(Match(10, Intensity.HIGH_RISK, TEK_A, 0, 0, 16, 0))

    assert len(verdict) == 2
    assert verdict.risk is Intensity.HIGH_RISK

    data = verdict.to_dict()
    assert data["warned"]
    assert data["risk"] == "HIGH_RISK"
    assert [m["epoch"] for m in data["matches"]] == [9, 10]


def test_verdict_keeps_strongest_intensity():
    verdict = ExposureVerdict("bob")
    assert verdict.add(Match(9, Intensity.LOW_RISK, TEK_A, 0, 0, 16, 0))
    assert verdict.add(Match(9, Intensity.HIGH_RISK, TEK_A, 0, 0, 16, 1))
    assert not verdict.add(Match(9, Intensity.LOW_RISK, TEK_A, 0, 0, 16, 2))
    assert not verdict.add(Match(9, Intensity.HIGH_RISK, TEK_A, 0, 0, 16, 3))

    [match] = verdict.matches
    assert (match.intensity, match.chunk_index) == (Intensity.HIGH_RISK, 1)
    assert verdict.risk is Intensity.HIGH_RISK
