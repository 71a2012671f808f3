"""
Exceptions raised by the SSEV exposure notification protocol.
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


class ExposureError(Exception):
    """Base class of all protocol errors"""


class ConfigurationError(ExposureError, ValueError):
    """Malformed temporal parameters or contact graph. Fatal at startup."""


class EntropyError(ExposureError):
    """The randomness source is unavailable. Fatal, never retried."""


class InvalidKeyRangeError(ExposureError, ValueError):
    """An uploaded batch contains a malformed or future diagnosis key.

    The whole batch is rejected; the uploader may correct it and resend.
    """


class UnknownChunkError(ExposureError, LookupError):
    """The requested chunk has not been sealed (yet)."""


class TransportError(ExposureError):
    """The request/response channel to the diagnosis server failed."""


#: Errors that may be returned by the diagnosis server, by name
WIRE_ERRORS = {
    cls.__name__: cls
    for cls in (
        ConfigurationError,
        InvalidKeyRangeError,
        UnknownChunkError,
    )
}
