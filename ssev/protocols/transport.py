"""
Request/response plumbing between clients and the diagnosis server

Only an in-process channel is provided. Every request and response is passed
through JSON, so clients and the server never share Python objects.
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

import json
import logging

from ssev.errors import TransportError, WIRE_ERRORS
from ssev.protocols.server import Ack, Chunk, ChunkMetadata

logger = logging.getLogger(__name__)


class LocalChannel:
    """Deliver JSON encoded requests to a :obj:`DiagnosisServerHandler`"""

    def __init__(self, handler):
        self.handler = handler

    def __call__(self, request):
        logger.debug("Request %s", request.get("op"))
        try:
            payload = json.dumps(request)
            response = self.handler.handle(json.loads(payload))
            return json.loads(json.dumps(response))
        except (TypeError, ValueError) as e:
            raise TransportError("Cannot encode message: {}".format(e)) from e


class DiagnosisServerStub:
    """Client side of the diagnosis server wire operations

    Args:
        channel (callable): Maps a request dictionary to a response
            dictionary. May raise :obj:`ssev.errors.TransportError`.
    """

    def __init__(self, channel):
        self.channel = channel

    def _call(self, request):
        response = self.channel(request)
        if not response.get("ok"):
            error = WIRE_ERRORS.get(response.get("error"))
            if error is None:
                raise TransportError("Unexpected response {!r}".format(response))
            raise error(response.get("message", ""))
        return response["result"]

    def upload_diagnosis_keys(self, participant_id, keys):
        request = {
            "op": "upload",
            "participant_id": participant_id,
            "keys": [key.to_dict() for key in keys],
        }
        return Ack.from_dict(self._call(request))

    def list_chunks(self, since_index=0):
        result = self._call({"op": "list_chunks", "since_index": since_index})
        return [ChunkMetadata.from_dict(data) for data in result]

    def fetch_chunk(self, index):
        return Chunk.from_dict(self._call({"op": "fetch_chunk", "index": index}))
