"""
Reference implementation of the SSEV client protocol state machine
"""

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

import enum
import logging
import threading

from cuckoo.filter import ScalableCuckooFilter

from ssev.config import LENGTH_METADATA, Intensity
from ssev.epochs import relevance_window, rolling_start
from ssev.errors import InvalidKeyRangeError, TransportError, UnknownChunkError
from ssev.protocols.keys import (
    DiagnosisKey,
    decrypt_aem,
    derive_aem,
    derive_rpi,
    derive_rpis,
    generate_tek,
    matching_epoch,
)

logger = logging.getLogger(__name__)


#################################
### GLOBAL PROTOCOL CONSTANTS ###
#################################

#: Version byte of the associated metadata (EN v1.0 format)
METADATA_VERSION = 0x40

#: FPR for the observed RPI filter
CUCKOO_FPR = 2 ** -42

#: Initial capacity of the observed RPI filter, it grows on demand
CUCKOO_INITIAL_CAPACITY = 1024


def encode_metadata(intensity):
    """Encode the metadata broadcast alongside an RPI"""
    return bytes([METADATA_VERSION, intensity.value, 0, 0])


def decode_metadata(metadata):
    """Decode decrypted metadata

    Raises:
        ValueError: If the metadata is malformed
    """
    if len(metadata) != LENGTH_METADATA or metadata[0] != METADATA_VERSION:
        raise ValueError("Malformed metadata {}".format(metadata.hex()))
    return Intensity(metadata[1])


class ClientState(enum.Enum):
    IDLE = "idle"
    GENERATING_EPOCH = "generating epoch"
    RECORDING_ENCOUNTER = "recording encounter"
    POLLING = "polling"
    MATCHING = "matching"


class Encounter:
    """An observed (RPI, AEM) pair. Never modified once recorded."""

    __slots__ = ("rpi", "aem", "epoch", "observer")

    def __init__(self, rpi, aem, epoch, observer):
        self.rpi = bytes(rpi)
        self.aem = None if aem is None else bytes(aem)
        self.epoch = epoch
        self.observer = observer

    def __eq__(self, other):
        if not isinstance(other, Encounter):
            return NotImplemented
        return (self.rpi, self.aem, self.epoch, self.observer) == (
            other.rpi,
            other.aem,
            other.epoch,
            other.observer,
        )

    def __hash__(self):
        return hash((self.rpi, self.aem, self.epoch, self.observer))

    def __repr__(self):
        return "Encounter({}..., epoch={}, observer={})".format(
            self.rpi[:4].hex(), self.epoch, self.observer
        )


class Match:
    """Evidence that an encounter was with a reported participant"""

    def __init__(self, epoch, intensity, tek, report_id, hop, diagnosis_epoch, chunk_index):
        self.epoch = epoch
        self.intensity = intensity
        self.tek = tek
        self.report_id = report_id
        self.hop = hop
        self.diagnosis_epoch = diagnosis_epoch
        self.chunk_index = chunk_index

    @property
    def identity(self):
        return (self.tek, self.epoch, self.report_id)

    def to_dict(self):
        return {
            "epoch": self.epoch,
            "intensity": self.intensity.name,
            "report_id": self.report_id,
            "hop": self.hop,
            "diagnosis_epoch": self.diagnosis_epoch,
            "chunk_index": self.chunk_index,
        }

    def __repr__(self):
        return "Match(epoch={}, {}, report={}, hop={})".format(
            self.epoch, self.intensity.name, self.report_id, self.hop
        )


class ExposureVerdict:
    """The accumulated matches of one participant

    Matches are only ever added; a participant that has been warned stays
    warned.
    """

    def __init__(self, participant_id):
        self.participant_id = participant_id
        self._lock = threading.Lock()
        self._matches = {}

    def add(self, match):
        """Add a match

        A high risk match replaces a low risk one for the same evidence, so
        the risk of a verdict never decreases.

        Returns:
            bool: False if the evidence is already present with the same or a
            higher intensity
        """
        with self._lock:
            known = self._matches.get(match.identity)
            if known is not None and (
                known.intensity is Intensity.HIGH_RISK or match.intensity is Intensity.LOW_RISK
            ):
                return False
            self._matches[match.identity] = match
            return True

    @property
    def matches(self):
        with self._lock:
            matches = list(self._matches.values())
        return sorted(matches, key=lambda match: (match.epoch, match.report_id, match.hop))

    @property
    def warned(self):
        return len(self) > 0

    @property
    def risk(self):
        """The highest intensity of all matches, None if not warned"""
        matches = self.matches
        if not matches:
            return None
        if any(match.intensity is Intensity.HIGH_RISK for match in matches):
            return Intensity.HIGH_RISK
        return Intensity.LOW_RISK

    def to_dict(self):
        risk = self.risk
        return {
            "participant": self.participant_id,
            "warned": self.warned,
            "risk": None if risk is None else risk.name,
            "matches": [match.to_dict() for match in self.matches],
        }

    def __len__(self):
        with self._lock:
            return len(self._matches)

    def __repr__(self):
        return "ExposureVerdict({}, {} matches)".format(self.participant_id, len(self))


class ContactTracer:
    """Simple reference implementation of a participant's app

    This class shows how the exposure notification part of an app operates:
    rotating identifiers every epoch, recording observed identifiers, and
    matching them against diagnosis keys downloaded from the server.

    *Simplification* Encounters are delivered by the caller instead of being
    sensed over Bluetooth, and the risk score only distinguishes low and high
    intensity encounters.

    The tracer has a single writer: one thread drives it through
    :meth:`next_epoch`, :meth:`record_encounter`, :meth:`poll` and
    :meth:`report_diagnosis`.
    """

    def __init__(self, participant_id, params, server, start_epoch, tek_source=generate_tek):
        """Create a new tracer and generate the identifiers of the first epoch

        Args:
            participant_id (str): Name of the participant
            params (:obj:`ssev.config.SystemParams`): System parameters
            server: The diagnosis server, or a
                :obj:`ssev.protocols.transport.DiagnosisServerStub` talking to it
            start_epoch (int): First epoch of the tracer
            tek_source (callable, optional): Returns fresh TEKs

        Raises:
            EntropyError: If no TEK can be generated
        """
        self.participant_id = participant_id
        self.params = params
        self.server = server
        self.state = ClientState.IDLE
        self._tek_source = tek_source

        # Own TEKs, by the first epoch they are valid for
        self.keys = {}
        self.current_epoch = None
        self.current_rpi = None

        self.encounters = []
        self._index_encounters()

        self.verdict = ExposureVerdict(participant_id)
        self.next_chunk_index = 0
        self._known_keys = []
        # Oldest epoch anything is kept for
        self._horizon = None

        self.reported = False
        self._own_reports = set()
        self._forwarded = {}
        self._pending_forwards = []

        self._generate_epoch(start_epoch)

    def _transition(self, state):
        logger.debug("%s: %s -> %s", self.participant_id, self.state.value, state.value)
        self.state = state

    @property
    def current_tek(self):
        return self.keys[rolling_start(self.current_epoch, self.params.tek_rolling_period)]

    def _generate_epoch(self, epoch):
        self._transition(ClientState.GENERATING_EPOCH)

        start = rolling_start(epoch, self.params.tek_rolling_period)
        if start not in self.keys:
            self.keys[start] = self._tek_source()
            logger.debug("%s: new TEK for epochs from %d", self.participant_id, start)

        self.current_epoch = epoch
        self.current_rpi = derive_rpi(self.keys[start], epoch)
        self._housekeeping()

        self._transition(ClientState.IDLE)

    def next_epoch(self):
        """Advance to the next epoch and rotate the broadcast identifier"""
        self._generate_epoch(self.current_epoch + 1)

    def _housekeeping(self):
        """Forget everything older than the oldest epoch a report can still cover

        This drops own TEKs that can no longer be part of a report, encounters
        recorded before that epoch, and downloaded diagnosis keys whose
        relevance window ended before it.
        """
        rolling_period = self.params.tek_rolling_period
        oldest = (
            rolling_start(self.current_epoch, rolling_period)
            - (self.params.relevance_window - 1) * rolling_period
        )
        if self._horizon is not None and oldest <= self._horizon:
            return
        self._horizon = oldest

        for start in [start for start in self.keys if start < oldest]:
            del self.keys[start]

        self._known_keys = [
            (chunk_index, key)
            for chunk_index, key in self._known_keys
            if relevance_window(key.diagnosis_epoch, self.params).last >= oldest
        ]

        if any(encounter.epoch < oldest for encounter in self.encounters):
            self.encounters = [
                encounter for encounter in self.encounters if encounter.epoch >= oldest
            ]
            self._index_encounters()
            logger.debug(
                "%s: forgot encounters before epoch %d", self.participant_id, oldest
            )

    def _index_encounters(self):
        self._encounters_by_rpi = {}
        self._observed_rpis = ScalableCuckooFilter(
            initial_capacity=CUCKOO_INITIAL_CAPACITY, error_rate=CUCKOO_FPR
        )
        for encounter in self.encounters:
            self._encounters_by_rpi.setdefault(encounter.rpi, []).append(encounter)
            self._observed_rpis.insert(encounter.rpi)

    def beacon(self, intensity=Intensity.LOW_RISK):
        """Return the (RPI, AEM) pair broadcast in the current epoch"""
        aem = derive_aem(self.current_tek, self.current_epoch, encode_metadata(intensity))
        return self.current_rpi, aem

    def record_encounter(self, rpi, aem, epoch, peer_id=None):
        """Append an observed identifier to the encounter log

        Exact duplicates (e.g., a beacon delivered twice) are recorded once.
        The encounter is immediately matched against all diagnosis keys
        downloaded so far.

        Args:
            rpi (byte array): The observed RPI
            aem (byte array): The observed AEM, or None
            epoch (int): Epoch of the observation
            peer_id (str, optional): Only used for logging

        Returns:
            :obj:`Encounter`
        """
        self._transition(ClientState.RECORDING_ENCOUNTER)

        encounter = Encounter(rpi, aem, epoch, self.participant_id)
        recorded = self._encounters_by_rpi.setdefault(encounter.rpi, [])
        if encounter in recorded:
            self._transition(ClientState.IDLE)
            return encounter

        recorded.append(encounter)
        self.encounters.append(encounter)
        self._observed_rpis.insert(encounter.rpi)
        logger.debug(
            "%s: observed %s at epoch %d", self.participant_id, peer_id or "a peer", epoch
        )

        if self._known_keys:
            self._transition(ClientState.MATCHING)
            for chunk_index, key in self._known_keys:
                self._match_encounter(key, encounter, chunk_index)

        self._transition(ClientState.IDLE)
        return encounter

    def poll(self):
        """Download and process all chunks not processed yet

        Transport failures are logged; the next poll simply retries.

        Returns:
            int: The number of newly processed chunks
        """
        self._transition(ClientState.POLLING)
        self._flush_forwards()

        try:
            available = self.server.list_chunks(self.next_chunk_index)
        except TransportError as e:
            logger.warning("%s: polling failed: %s", self.participant_id, e)
            self._transition(ClientState.IDLE)
            return 0

        processed = 0
        for metadata in sorted(available, key=lambda metadata: metadata.index):
            if metadata.index < self.next_chunk_index:
                continue

            self._transition(ClientState.POLLING)
            try:
                chunk = self.server.fetch_chunk(metadata.index)
            except UnknownChunkError:
                break
            except TransportError as e:
                logger.warning(
                    "%s: fetching chunk %d failed: %s", self.participant_id, metadata.index, e
                )
                break

            self._transition(ClientState.MATCHING)
            self.process_chunk(chunk)
            processed += 1

        self._flush_forwards()
        self._transition(ClientState.IDLE)
        return processed

    def process_chunk(self, chunk):
        """Match all keys of a sealed chunk against the encounter log

        Chunks must be processed in order. Chunks below the high-water mark
        are ignored.
        """
        if chunk.index < self.next_chunk_index:
            return

        for key in chunk.keys:
            if self._is_own(key):
                continue
            try:
                self._match_key(key, chunk.index)
            except ValueError as e:
                logger.warning("%s: skipping %r: %s", self.participant_id, key, e)
                continue
            self._known_keys.append((chunk.index, key))

        self.next_chunk_index = chunk.index + 1

    def _is_own(self, key):
        return key.report_id in self._own_reports or key.tek in self.keys.values()

    def _match_key(self, key, chunk_index):
        window = relevance_window(key.diagnosis_epoch, self.params)
        rpis = derive_rpis(
            key.tek,
            key.rolling_start,
            key.rolling_period,
            epochs=key.candidate_epochs(window),
        )
        for epoch, rpi in rpis.items():
            if not self._observed_rpis.contains(rpi):
                continue
            for encounter in self._encounters_by_rpi.get(rpi, ()):
                if self._observed_in(encounter, epoch, window):
                    self._on_match(key, encounter, epoch, chunk_index)

    def _match_encounter(self, key, encounter, chunk_index):
        epoch = matching_epoch(key, encounter)
        if epoch is None:
            return
        window = relevance_window(key.diagnosis_epoch, self.params)
        if epoch not in window or not self._observed_in(encounter, epoch, window):
            return
        self._on_match(key, encounter, epoch, chunk_index)

    def _observed_in(self, encounter, epoch, window):
        """Whether an encounter was recorded within the window, close to the epoch
        its RPI was derived for"""
        return (
            encounter.epoch in window
            and abs(encounter.epoch - epoch) <= self.params.epoch_tolerance
        )

    def _on_match(self, key, encounter, epoch, chunk_index):
        intensity = Intensity.LOW_RISK
        if encounter.aem is not None:
            try:
                intensity = decode_metadata(decrypt_aem(key.tek, epoch, encounter.aem))
            except ValueError as e:
                logger.warning("%s: ignoring match: %s", self.participant_id, e)
                return

        # Forwarded keys only stand for the event itself
        if key.hop > 0 and intensity is not Intensity.HIGH_RISK:
            return

        match = Match(
            epoch,
            intensity,
            key.tek,
            key.report_id,
            key.hop,
            key.diagnosis_epoch,
            chunk_index,
        )
        if self.verdict.add(match):
            logger.info(
                "%s: exposure at epoch %d (%s, report %s, hop %d)",
                self.participant_id,
                epoch,
                intensity.name,
                key.report_id,
                key.hop,
            )

        if intensity is Intensity.HIGH_RISK and key.hop + 1 < self.params.hop_limit:
            self._schedule_forward(key, epoch)

    def _schedule_forward(self, key, epoch):
        hop = key.hop + 1
        forwarded_hop = self._forwarded.get((key.report_id, epoch))
        if forwarded_hop is not None and forwarded_hop <= hop:
            return

        start = rolling_start(epoch, self.params.tek_rolling_period)
        tek = self.keys.get(start)
        if tek is None:
            logger.warning(
                "%s: no TEK left for epoch %d, cannot forward", self.participant_id, epoch
            )
            return

        self._forwarded[(key.report_id, epoch)] = hop
        self._pending_forwards.append(
            DiagnosisKey(
                tek,
                start,
                self.params.tek_rolling_period,
                key.diagnosis_epoch,
                hop=hop,
                epochs=[epoch],
                report_id=key.report_id,
            )
        )

    def _flush_forwards(self):
        """Upload forwarded keys, one batch per report"""
        by_report = {}
        for key in self._pending_forwards:
            by_report.setdefault(key.report_id, []).append(key)

        pending = []
        for report_id, keys in by_report.items():
            try:
                self.server.upload_diagnosis_keys(self.participant_id, keys)
                logger.info(
                    "%s: forwarded %d keys for report %s",
                    self.participant_id,
                    len(keys),
                    report_id,
                )
            except TransportError as e:
                logger.warning("%s: forwarding failed: %s", self.participant_id, e)
                pending.extend(keys)
            except InvalidKeyRangeError as e:
                logger.error("%s: forwarded keys rejected: %s", self.participant_id, e)

        self._pending_forwards = pending

    def tracing_keys(self, diagnosis_epoch):
        """Return the diagnosis keys covering the relevance window of a diagnosis"""
        window = relevance_window(diagnosis_epoch, self.params)
        return [
            DiagnosisKey(tek, start, self.params.tek_rolling_period, diagnosis_epoch)
            for start, tek in sorted(self.keys.items())
            if window.start <= start <= diagnosis_epoch
        ]

    def report_diagnosis(self, diagnosis_epoch=None):
        """Upload the own TEKs after a positive diagnosis

        This happens at most once per tracer.

        Args:
            diagnosis_epoch (int, optional): Default: the current epoch

        Returns:
            :obj:`ssev.protocols.server.Ack` or None if already reported

        Raises:
            ValueError: If the diagnosis lies in the future or no key is available
            TransportError: If the upload did not reach the server
            InvalidKeyRangeError: If the server rejects the keys
        """
        if self.reported:
            logger.warning("%s: diagnosis already reported", self.participant_id)
            return None

        if diagnosis_epoch is None:
            diagnosis_epoch = self.current_epoch
        if diagnosis_epoch > self.current_epoch:
            raise ValueError("Cannot report a diagnosis in the future")

        keys = self.tracing_keys(diagnosis_epoch)
        if not keys:
            raise ValueError("No keys available for epoch {}".format(diagnosis_epoch))

        ack = self.server.upload_diagnosis_keys(self.participant_id, keys)
        self.reported = True
        self._own_reports.add(ack.report_id)
        logger.warning(
            "%s: diagnosed at epoch %d, uploaded %d keys as report %d",
            self.participant_id,
            diagnosis_epoch,
            len(keys),
            ack.report_id,
        )
        return ack
