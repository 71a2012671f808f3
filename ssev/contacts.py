"""
Configuration-time contact graph: who met whom, when, and who is diagnosed
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
from collections import namedtuple

from ssev.config import Intensity
from ssev.epochs import epoch_from_time, relevance_window
from ssev.errors import ConfigurationError


class Participant:
    """A node of the contact graph

    Args:
        participant_id (str): Unique name of the participant
        diagnosis_epoch (int, optional): Epoch at which the participant is
            diagnosed. None for participants that stay healthy.
    """

    def __init__(self, participant_id, diagnosis_epoch=None):
        self.id = participant_id
        self.diagnosis_epoch = diagnosis_epoch

    @property
    def diagnosed(self):
        return self.diagnosis_epoch is not None

    def __repr__(self):
        if self.diagnosed:
            return "Participant({}, diagnosed at {})".format(self.id, self.diagnosis_epoch)
        return "Participant({})".format(self.id)


class Contact:
    """A bidirectional encounter between two participants in one epoch"""

    def __init__(self, epoch, first, second, intensity=Intensity.LOW_RISK):
        self.epoch = epoch
        self.first = first
        self.second = second
        self.intensity = intensity

    def peer_of(self, participant_id):
        if participant_id == self.first:
            return self.second
        if participant_id == self.second:
            return self.first
        raise ValueError("{} is not part of {!r}".format(participant_id, self))

    @property
    def high_risk(self):
        return self.intensity is Intensity.HIGH_RISK

    def __repr__(self):
        return "Contact({}, {} <-> {}, {})".format(
            self.epoch, self.first, self.second, self.intensity.name
        )


#: A participant's view of one contact
ScheduledContact = namedtuple("ScheduledContact", ["epoch", "peer", "intensity"])


class ContactGraph:
    """Participants indexed by id plus an explicit list of timed contacts

    The graph is built once by a configuration generator and is not modified
    afterwards. It may contain arbitrary cycles between participants.

    Args:
        today (int or :obj:`datetime.datetime`): The reference "today" epoch.
            All contacts and diagnoses must lie within the relevance window
            ending at today.
        epoch_length (int, optional): Used to convert datetimes to epochs
    """

    def __init__(self, today, epoch_length=None):
        self._epoch_length = epoch_length
        self.today = self._to_epoch(today)
        self.participants = {}
        self.contacts = []
        self._contacts_by_participant = {}

    def _to_epoch(self, when):
        if isinstance(when, datetime.datetime):
            if self._epoch_length is None:
                return epoch_from_time(when)
            return epoch_from_time(when, self._epoch_length)
        return when

    def add_participant(self, participant_id, diagnosis_epoch=None):
        if participant_id in self.participants:
            raise ConfigurationError("Duplicate participant {}".format(participant_id))
        if diagnosis_epoch is not None:
            diagnosis_epoch = self._to_epoch(diagnosis_epoch)

        participant = Participant(participant_id, diagnosis_epoch)
        self.participants[participant_id] = participant
        self._contacts_by_participant[participant_id] = []
        return participant

    def add_contact(self, first, second, when, intensity=Intensity.LOW_RISK):
        """Record that first and second met at the given epoch (or time)"""
        for participant_id in (first, second):
            if participant_id not in self.participants:
                raise ConfigurationError("Unknown participant {}".format(participant_id))
        if first == second:
            raise ConfigurationError("{} cannot meet itself".format(first))

        contact = Contact(self._to_epoch(when), first, second, intensity)
        self.contacts.append(contact)
        self._contacts_by_participant[first].append(contact)
        self._contacts_by_participant[second].append(contact)
        return contact

    def contacts_of(self, participant_id):
        return list(self._contacts_by_participant[participant_id])

    def diagnosed(self):
        return [p for p in self.participants.values() if p.diagnosed]

    def schedule_for(self, participant_id):
        """The contacts of a participant, as it will experience them, in order"""
        schedule = [
            ScheduledContact(contact.epoch, contact.peer_of(participant_id), contact.intensity)
            for contact in self._contacts_by_participant[participant_id]
        ]
        return sorted(schedule, key=lambda scheduled: (scheduled.epoch, scheduled.peer))

    def first_epoch(self, params):
        """First epoch participants have to generate identifiers for"""
        return relevance_window(self.today, params).start

    def validate(self, params):
        """Check that the graph fits the system parameters

        Raises:
            ConfigurationError: If a contact or diagnosis lies outside the
                relevance window ending today
        """
        first = self.first_epoch(params)

        for contact in self.contacts:
            if not first <= contact.epoch <= self.today:
                raise ConfigurationError(
                    "{!r} outside of [{}, {}]".format(contact, first, self.today)
                )

        for participant in self.diagnosed():
            if not first <= participant.diagnosis_epoch <= self.today:
                raise ConfigurationError(
                    "{!r} outside of [{}, {}]".format(participant, first, self.today)
                )

    @classmethod
    def example(cls):
        """Five participants around two events on March 1st, 2021

        p0 is diagnosed on March 14th. With the default system parameters, p1
        and p4 met p0 directly, p2 attended both events with them, and p3 only
        met p2 at the earlier event.
        """
        utc = datetime.timezone.utc
        today = datetime.datetime(2021, 3, 14, tzinfo=utc)
        lunch = datetime.datetime(2021, 3, 1, 13, 44, tzinfo=utc)
        afternoon = datetime.datetime(2021, 3, 1, 15, 44, tzinfo=utc)

        graph = cls(today)
        graph.add_participant("p0", diagnosis_epoch=today)
        for name in ("p1", "p2", "p3", "p4"):
            graph.add_participant(name)

        high = Intensity.HIGH_RISK
        graph.add_contact("p0", "p1", afternoon, high)
        graph.add_contact("p1", "p2", afternoon, high)
        graph.add_contact("p1", "p2", lunch, Intensity.LOW_RISK)
        graph.add_contact("p2", "p3", lunch, high)
        graph.add_contact("p2", "p4", lunch, high)
        graph.add_contact("p0", "p4", lunch, high)
        return graph
