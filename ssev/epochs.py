"""
Temporal model: epochs, rolling periods, relevance windows and chunk intervals

All conversions are pure. Epochs are counted from the start of the UNIX
epoch, i.e., the epoch number of the instant t is floor(t / epoch_length).
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

import datetime

from ssev.config import EPOCH_LENGTH, TEK_ROLLING_PERIOD
from ssev.errors import ConfigurationError


#########################
### EPOCH CONVERSIONS ###
#########################


def epoch_from_time(time, epoch_length=EPOCH_LENGTH):
    """Compute the epoch number given a time

    Args:
        time (:obj:`datetime.datetime`): A date-time instance. Naive instances
            are interpreted as local time, like :func:`datetime.timestamp`.
        epoch_length (int, optional): Length of an epoch in seconds

    Returns:
        int: the number of whole epochs since the UNIX Epoch
    """
    return int(time.timestamp() // epoch_length)


def time_from_epoch(epoch, epoch_length=EPOCH_LENGTH):
    """Return the (UTC) start time of an epoch"""
    return datetime.datetime.fromtimestamp(
        epoch * epoch_length, tz=datetime.timezone.utc
    )


def rolling_start(epoch, rolling_period=TEK_ROLLING_PERIOD):
    """Return the first epoch of the rolling period containing epoch"""
    return (epoch // rolling_period) * rolling_period


def is_rolling_boundary(epoch, rolling_period=TEK_ROLLING_PERIOD):
    """Whether a new TEK takes over at this epoch"""
    return epoch % rolling_period == 0


########################
### RELEVANCE WINDOW ###
########################


class RelevanceWindow:
    """The epochs during which an encounter is relevant for a diagnosis

    The window runs from `start` to `end` (the diagnosis epoch). Whether the
    boundaries themselves belong to the window is configurable.
    """

    def __init__(self, start, end, include_start=True, include_end=False):
        self.start = start
        self.end = end
        self.include_start = include_start
        self.include_end = include_end

    @property
    def first(self):
        """First epoch inside the window"""
        return self.start if self.include_start else self.start + 1

    @property
    def last(self):
        """Last epoch inside the window"""
        return self.end if self.include_end else self.end - 1

    def contains(self, epoch):
        return self.first <= epoch <= self.last

    __contains__ = contains

    def epochs(self):
        """All epochs in the window, in order"""
        return range(self.first, self.last + 1)

    def __eq__(self, other):
        if not isinstance(other, RelevanceWindow):
            return NotImplemented
        return (self.first, self.last) == (other.first, other.last)

    def __hash__(self):
        return hash((self.first, self.last))

    def __repr__(self):
        return "{}{}, {}{}".format(
            "[" if self.include_start else "(",
            self.start,
            self.end,
            "]" if self.include_end else ")",
        )


def relevance_window(diagnosis_epoch, params):
    """Compute the relevance window of a diagnosis

    The window starts at the beginning of the rolling period that lies
    `relevance_window - 1` rolling periods before the one containing the
    diagnosis epoch, so it covers exactly `relevance_window` TEKs.

    Args:
        diagnosis_epoch (int): Epoch of the diagnosis
        params (:obj:`ssev.config.SystemParams`): System parameters

    Returns:
        :obj:`RelevanceWindow`

    Raises:
        ConfigurationError: If the window would reach before epoch 0
    """
    rolling_period = params.tek_rolling_period
    start = (
        rolling_start(diagnosis_epoch, rolling_period)
        - (params.relevance_window - 1) * rolling_period
    )
    if diagnosis_epoch < 0 or start < 0:
        raise ConfigurationError(
            "Relevance window of epoch {} starts at negative epoch {}".format(
                diagnosis_epoch, start
            )
        )

    return RelevanceWindow(
        start,
        diagnosis_epoch,
        include_start=params.include_window_start,
        include_end=params.include_window_end,
    )


#######################
### CHUNK INTERVALS ###
#######################


class ChunkInterval:
    """A wall-clock window [start, end) of the diagnosis server

    Args:
        index (int): Index of the interval, starting at 0
        start (float): Start in seconds since the UNIX Epoch
        length (float): Length in seconds
    """

    def __init__(self, index, start, length):
        if length <= 0:
            raise ConfigurationError("Chunk intervals must have a positive length")

        self.index = index
        self.start = start
        self.length = length

    @property
    def end(self):
        return self.start + self.length

    def contains(self, now):
        return self.start <= now < self.end

    def elapsed(self, now):
        """Whether the interval is over at time now"""
        return now >= self.end

    def next_interval(self):
        """The interval directly following this one"""
        return ChunkInterval(self.index + 1, self.end, self.length)

    def __repr__(self):
        return "ChunkInterval({}, [{}, {}))".format(self.index, self.start, self.end)


def chunk_index_for_time(origin, now, length):
    """Index of the chunk interval containing now, for intervals starting at origin"""
    if now < origin:
        raise ValueError("Time lies before the first chunk interval")
    return int((now - origin) // length)
