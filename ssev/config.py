"""
Global system constants and parameters shared by all participants.
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

from ssev.errors import ConfigurationError


#: The length of an epoch (EN interval) in seconds
EPOCH_LENGTH = 10 * 60

#: Number of epochs covered by a single TEK
TEK_ROLLING_PERIOD = 144

#: For how many rolling periods back from the diagnosis a TEK stays relevant
RELEVANCE_WINDOW = 14

#: Length of a diagnosis server chunk in seconds
CHUNK_PERIOD = 30

#: How often a client polls the diagnosis server, in seconds
REFRESH_PERIOD = 30

#: Length of a generated TEK in bytes
LENGTH_TEK = 16

#: Accepted range of TEK lengths for uploaded diagnosis keys
MIN_LENGTH_TEK = 16
MAX_LENGTH_TEK = 32

#: Length of RPIs in bytes
LENGTH_RPI = 16

#: Length of the (plaintext) associated metadata in bytes
LENGTH_METADATA = 4

#: How many epochs the epoch an RPI was derived for may differ from the
#: epoch it was observed in
EPOCH_TOLERANCE = 1


class Intensity(enum.Enum):
    """How close an encounter was. Carried in the associated metadata."""

    LOW_RISK = 0
    HIGH_RISK = 1


class SystemParams:
    """Parameters every participant and the diagnosis server agree on.

    The hop limit has no default: whether an exposure propagates beyond the
    diagnosed participant's direct contacts must be decided explicitly.

    Args:
        hop_limit (int): How many hops away from a diagnosed participant
            warnings reach. 1 means direct contacts only.
        epoch_length (int): Length of an epoch in seconds
        tek_rolling_period (int): Number of epochs per TEK
        relevance_window (int): Number of rolling periods a TEK remains relevant
        chunk_period (float): Length of a chunk interval in seconds
        refresh_period (float): Polling interval of clients in seconds
        include_window_start (bool): Whether the earliest epoch of a relevance
            window belongs to it
        include_window_end (bool): Whether the diagnosis epoch itself belongs
            to its relevance window
        epoch_tolerance (int): How far, in epochs, the epoch an RPI was derived
            for may lie from the epoch it was observed in

    Raises:
        ConfigurationError: if a parameter is out of range
    """

    def __init__(
        self,
        hop_limit,
        epoch_length=EPOCH_LENGTH,
        tek_rolling_period=TEK_ROLLING_PERIOD,
        relevance_window=RELEVANCE_WINDOW,
        chunk_period=CHUNK_PERIOD,
        refresh_period=REFRESH_PERIOD,
        include_window_start=True,
        include_window_end=False,
        epoch_tolerance=EPOCH_TOLERANCE,
    ):
        self.hop_limit = hop_limit
        self.epoch_length = epoch_length
        self.tek_rolling_period = tek_rolling_period
        self.relevance_window = relevance_window
        self.chunk_period = chunk_period
        self.refresh_period = refresh_period
        self.include_window_start = include_window_start
        self.include_window_end = include_window_end
        self.epoch_tolerance = epoch_tolerance
        self._validate()

    def _validate(self):
        integers = {
            "hop_limit": self.hop_limit,
            "epoch_length": self.epoch_length,
            "tek_rolling_period": self.tek_rolling_period,
            "relevance_window": self.relevance_window,
        }
        for name, value in integers.items():
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigurationError(
                    "{} must be a positive integer, got {!r}".format(name, value)
                )

        for name in ("chunk_period", "refresh_period"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(
                    "{} must be a positive number, got {!r}".format(name, value)
                )

        tolerance = self.epoch_tolerance
        if not isinstance(tolerance, int) or isinstance(tolerance, bool) or tolerance < 0:
            raise ConfigurationError(
                "epoch_tolerance must be a non-negative integer, got {!r}".format(tolerance)
            )

    @property
    def window_epochs(self):
        """Number of epochs spanned by the rolling periods of a relevance window"""
        return self.relevance_window * self.tek_rolling_period

    def __repr__(self):
        return (
            "SystemParams(hop_limit={}, epoch_length={}, tek_rolling_period={}, "
            "relevance_window={}, chunk_period={}, refresh_period={}, "
            "epoch_tolerance={})".format(
                self.hop_limit,
                self.epoch_length,
                self.tek_rolling_period,
                self.relevance_window,
                self.chunk_period,
                self.refresh_period,
                self.epoch_tolerance,
            )
        )
