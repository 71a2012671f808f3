"""
Reference implementation of the SSEV diagnosis server

The server collects diagnosis keys into the currently open chunk. Once the
chunk interval of the open chunk elapses, the chunk is sealed and becomes
available for download by all clients.
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

import logging
import threading
import time

from ssev.config import MIN_LENGTH_TEK, MAX_LENGTH_TEK
from ssev.epochs import ChunkInterval
from ssev.errors import ExposureError, InvalidKeyRangeError, UnknownChunkError
from ssev.protocols.keys import DiagnosisKey

logger = logging.getLogger(__name__)


###################
### DATA SHAPES ###
###################


class Ack:
    """Acknowledgement of an accepted upload"""

    def __init__(self, report_id, accepted, chunk_index):
        self.report_id = report_id
        self.accepted = accepted
        self.chunk_index = chunk_index

    def to_dict(self):
        return {
            "report_id": self.report_id,
            "accepted": self.accepted,
            "chunk_index": self.chunk_index,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(data["report_id"], data["accepted"], data["chunk_index"])

    def __repr__(self):
        return "Ack(report_id={}, accepted={}, chunk_index={})".format(
            self.report_id, self.accepted, self.chunk_index
        )


class ChunkMetadata:
    """Summary of a sealed chunk as returned by :meth:`DiagnosisServer.list_chunks`"""

    def __init__(self, index, start, end, nr_keys):
        self.index = index
        self.start = start
        self.end = end
        self.nr_keys = nr_keys

    def to_dict(self):
        return {
            "index": self.index,
            "start": self.start,
            "end": self.end,
            "nr_keys": self.nr_keys,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(data["index"], data["start"], data["end"], data["nr_keys"])

    def __repr__(self):
        return "ChunkMetadata({}, [{}, {}), {} keys)".format(
            self.index, self.start, self.end, self.nr_keys
        )


class Chunk:
    """A batch of diagnosis keys assigned to one chunk interval

    A chunk is open while the server appends to it. :meth:`seal` returns an
    immutable copy; only sealed chunks ever leave the server.
    """

    def __init__(self, interval, keys=(), sealed=False):
        self.interval = interval
        self.sealed = sealed
        self._keys = tuple(keys) if sealed else list(keys)

    @property
    def index(self):
        return self.interval.index

    @property
    def keys(self):
        return tuple(self._keys)

    def extend(self, keys):
        if self.sealed:
            raise ValueError("Chunk {} is sealed".format(self.index))
        self._keys.extend(keys)

    def seal(self):
        return Chunk(self.interval, self._keys, sealed=True)

    def metadata(self):
        return ChunkMetadata(
            self.index, self.interval.start, self.interval.end, len(self._keys)
        )

    def to_dict(self):
        data = self.metadata().to_dict()
        data["keys"] = [key.to_dict() for key in self._keys]
        return data

    @classmethod
    def from_dict(cls, data):
        interval = ChunkInterval(data["index"], data["start"], data["end"] - data["start"])
        keys = [DiagnosisKey.from_dict(key) for key in data["keys"]]
        return cls(interval, keys, sealed=True)

    def __len__(self):
        return len(self._keys)

    def __repr__(self):
        return "Chunk({}, {} keys, {})".format(
            self.interval, len(self._keys), "sealed" if self.sealed else "open"
        )


##################
### VALIDATION ###
##################


def validate_diagnosis_key(key, params):
    """Check a single diagnosis key before it is accepted

    Args:
        key (:obj:`DiagnosisKey`): The uploaded key
        params (:obj:`ssev.config.SystemParams`): System parameters

    Raises:
        InvalidKeyRangeError: If the key is malformed or lies in the future
    """

    def is_int(value):
        return isinstance(value, int) and not isinstance(value, bool)

    if not MIN_LENGTH_TEK <= len(key.tek) <= MAX_LENGTH_TEK:
        raise InvalidKeyRangeError("TEK has invalid length {}".format(len(key.tek)))

    for name in ("rolling_start", "rolling_period", "diagnosis_epoch", "hop"):
        if not is_int(getattr(key, name)) or getattr(key, name) < 0:
            raise InvalidKeyRangeError(
                "{} must be a non-negative integer in {!r}".format(name, key)
            )

    if not 1 <= key.rolling_period <= params.tek_rolling_period:
        raise InvalidKeyRangeError(
            "Rolling period {} outside [1, {}]".format(
                key.rolling_period, params.tek_rolling_period
            )
        )

    # Keys for the future are never accepted
    if key.rolling_start > key.diagnosis_epoch:
        raise InvalidKeyRangeError(
            "Key starting at epoch {} lies after diagnosis epoch {}".format(
                key.rolling_start, key.diagnosis_epoch
            )
        )

    if key.epochs is not None:
        covered = key.covered_epochs()
        if not key.epochs or any(
            not is_int(epoch) or epoch not in covered for epoch in key.epochs
        ):
            raise InvalidKeyRangeError(
                "Epoch restriction {} not within {}".format(key.epochs, covered)
            )

    if key.hop >= params.hop_limit:
        raise InvalidKeyRangeError(
            "Hop {} exceeds the hop limit {}".format(key.hop, params.hop_limit)
        )


########################
### DIAGNOSIS SERVER ###
########################


class DiagnosisServer:
    """Simple reference implementation of the diagnosis server

    *Simplification* Uploads are not authenticated, and chunks are kept in
    memory for the lifetime of the server.

    A note on concurrency: uploads and chunk advancement share one lock, so
    appends to the open chunk are serialized. Sealed chunks are immutable and
    are read without locking.
    """

    def __init__(self, params, start_time=None):
        """Create a diagnosis server

        Args:
            params (:obj:`ssev.config.SystemParams`): System parameters
            start_time (float, optional): Start of the first chunk interval in
                seconds since UNIX Epoch. Default: the current time.
        """
        if start_time is None:
            start_time = time.time()

        self.params = params
        self._lock = threading.Lock()
        self._open_chunk = Chunk(ChunkInterval(0, start_time, params.chunk_period))
        self._sealed_chunks = []
        self._next_report_id = 0

    @property
    def open_interval(self):
        return self._open_chunk.interval

    def upload_diagnosis_keys(self, participant_id, keys):
        """Add a batch of diagnosis keys to the open chunk

        A batch without report id is a fresh diagnosis report and receives a
        new report id. Forwarded batches must carry the report id they
        forward.

        Args:
            participant_id (str): The uploader, only used for logging
            keys ([:obj:`DiagnosisKey`]): The keys

        Returns:
            :obj:`Ack`

        Raises:
            InvalidKeyRangeError: If any key is invalid, nothing is stored
        """
        keys = list(keys)
        if not keys:
            raise InvalidKeyRangeError("Empty upload")

        for key in keys:
            validate_diagnosis_key(key, self.params)

        report_ids = {key.report_id for key in keys}
        if len(report_ids) != 1:
            raise InvalidKeyRangeError("Batch mixes report ids {}".format(report_ids))
        diagnosis_epochs = {key.diagnosis_epoch for key in keys}
        if len(diagnosis_epochs) != 1:
            raise InvalidKeyRangeError("Batch mixes diagnosis epochs")

        report_id = report_ids.pop()

        with self._lock:
            if report_id is None:
                if any(key.hop != 0 for key in keys):
                    raise InvalidKeyRangeError("Forwarded keys need a report id")
                report_id = self._next_report_id
                self._next_report_id += 1
                keys = [key.with_report_id(report_id) for key in keys]
            elif report_id >= self._next_report_id or report_id < 0:
                raise InvalidKeyRangeError("Unknown report id {}".format(report_id))

            self._open_chunk.extend(keys)
            chunk_index = self._open_chunk.index

        logger.info(
            "Accepted %d keys from %s for report %d into chunk %d",
            len(keys),
            participant_id,
            report_id,
            chunk_index,
        )
        return Ack(report_id, len(keys), chunk_index)

    def advance_chunk_interval(self, now=None):
        """Seal the open chunk if its interval has elapsed

        When several intervals elapsed since the last call, each is sealed in
        turn (the intermediate ones empty), so intervals stay contiguous.

        Args:
            now (float, optional): Current time in seconds since UNIX Epoch

        Returns:
            int or None: index of the last chunk sealed, None if nothing changed
        """
        if now is None:
            now = time.time()

        sealed_index = None
        with self._lock:
            while self._open_chunk.interval.elapsed(now):
                sealed = self._open_chunk.seal()
                self._sealed_chunks.append(sealed)
                self._open_chunk = Chunk(sealed.interval.next_interval())
                sealed_index = sealed.index
                logger.debug("Sealed %r", sealed)

        return sealed_index

    def _sealed_snapshot(self):
        # Appends are atomic, and sealed chunks never change
        return list(self._sealed_chunks)

    def list_chunks(self, since_index=0):
        """Return the metadata of all sealed chunks with index >= since_index"""
        if since_index < 0:
            raise ValueError("Chunk indices start at 0")
        return [chunk.metadata() for chunk in self._sealed_snapshot()[since_index:]]

    def fetch_chunk(self, index):
        """Return a sealed chunk

        Raises:
            UnknownChunkError: If the chunk is not sealed yet
        """
        chunks = self._sealed_snapshot()
        if not 0 <= index < len(chunks):
            raise UnknownChunkError(
                "Chunk {} not available, {} chunks sealed".format(index, len(chunks))
            )
        return chunks[index]


class DiagnosisServerHandler:
    """Dispatch transport-agnostic requests to a :obj:`DiagnosisServer`

    Requests and responses are plain dictionaries that survive a JSON round
    trip. Errors of the protocol are reported by name, never raised.
    """

    def __init__(self, server):
        self.server = server

    def handle(self, request):
        op = request.get("op")
        try:
            if op == "upload":
                keys = [DiagnosisKey.from_dict(key) for key in request["keys"]]
                ack = self.server.upload_diagnosis_keys(request["participant_id"], keys)
                result = ack.to_dict()
            elif op == "list_chunks":
                chunks = self.server.list_chunks(request.get("since_index", 0))
                result = [chunk.to_dict() for chunk in chunks]
            elif op == "fetch_chunk":
                result = self.server.fetch_chunk(request["index"]).to_dict()
            else:
                raise InvalidKeyRangeError("Unknown operation {!r}".format(op))
        except ExposureError as e:
            logger.warning("Request %s failed: %s", op, e)
            return {"ok": False, "error": type(e).__name__, "message": str(e)}
        except (KeyError, ValueError) as e:
            logger.warning("Malformed %s request: %s", op, e)
            return {"ok": False, "error": "InvalidKeyRangeError", "message": str(e)}

        return {"ok": True, "result": result}


class ChunkTimer(threading.Thread):
    """Advance the chunk interval of a server on a fixed wall-clock cadence"""

    def __init__(self, server, period=None):
        super().__init__(name="chunk-timer", daemon=True)
        self.server = server
        self.period = period if period is not None else server.params.chunk_period
        self._stopped = threading.Event()

    def run(self):
        while not self._stopped.is_set():
            delay = self.server.open_interval.end - time.time()
            if self._stopped.wait(max(0.0, min(delay, self.period))):
                break
            self.server.advance_chunk_interval(time.time())

    def stop(self):
        self._stopped.set()
