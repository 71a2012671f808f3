"""
Ground truth for the live protocol, computed from the full contact graph

The verifier knows everybody's contacts, which no party of the live protocol
does. It predicts who must be warned, so that the verdicts of the clients can
be checked after a run.
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
from collections import deque

from ssev.epochs import relevance_window

logger = logging.getLogger(__name__)


def warned_by(graph, origin, params):
    """Return the participants warned by the diagnosis of origin

    Direct contacts of origin within the relevance window of its diagnosis are
    one hop away. A participant reached over a high risk contact at epoch e
    attended an event at e; everybody it had a high risk contact with at that
    same epoch is one hop further. The search stops at `params.hop_limit`.

    Args:
        graph (:obj:`ssev.contacts.ContactGraph`): The contact graph
        origin (:obj:`ssev.contacts.Participant`): A diagnosed participant
        params (:obj:`ssev.config.SystemParams`): System parameters

    Returns:
        dictionary: For each warned participant, the smallest number of hops
    """
    window = relevance_window(origin.diagnosis_epoch, params)

    hops = {}
    explored = set()
    queue = deque()

    for contact in graph.contacts_of(origin.id):
        if contact.epoch not in window:
            continue
        peer = contact.peer_of(origin.id)
        hops.setdefault(peer, 1)
        if contact.high_risk and (peer, contact.epoch) not in explored:
            explored.add((peer, contact.epoch))
            queue.append((peer, contact.epoch, 1))

    while queue:
        participant_id, epoch, hop = queue.popleft()
        if hop >= params.hop_limit:
            continue

        for contact in graph.contacts_of(participant_id):
            if contact.epoch != epoch or not contact.high_risk:
                continue
            peer = contact.peer_of(participant_id)
            if peer == origin.id or (peer, epoch) in explored:
                continue
            explored.add((peer, epoch))
            hops.setdefault(peer, hop + 1)
            queue.append((peer, epoch, hop + 1))

    hops.pop(origin.id, None)
    return hops


def expected_warned(graph, params):
    """Compute the set of participants the live protocol has to warn

    Args:
        graph (:obj:`ssev.contacts.ContactGraph`): The contact graph
        params (:obj:`ssev.config.SystemParams`): System parameters

    Returns:
        set: ids of the participants to be warned
    """
    warned = set()
    for origin in graph.diagnosed():
        reached = warned_by(graph, origin, params)
        logger.info(
            "Diagnosis of %s at epoch %d warns %s",
            origin.id,
            origin.diagnosis_epoch,
            ", ".join(sorted(reached)) or "nobody",
        )
        warned.update(reached)
    return warned


class Discrepancy:
    """A participant whose live verdict differs from the ground truth"""

    def __init__(self, participant_id, expected, observed):
        self.participant_id = participant_id
        self.expected = expected
        self.observed = observed

    def __eq__(self, other):
        if not isinstance(other, Discrepancy):
            return NotImplemented
        return (self.participant_id, self.expected, self.observed) == (
            other.participant_id,
            other.expected,
            other.observed,
        )

    def __repr__(self):
        return "Discrepancy({}, expected {}, observed {})".format(
            self.participant_id,
            "warned" if self.expected else "not warned",
            "warned" if self.observed else "not warned",
        )


def compare(expected, verdicts):
    """Diff live verdicts against the expected warnings

    Never raises on a mismatch; the result is advisory.

    Args:
        expected (set): ids of participants expected to be warned
        verdicts (dictionary): For each participant id, its
            :obj:`ssev.protocols.client.ExposureVerdict`

    Returns:
        list of :obj:`Discrepancy`, sorted by participant id
    """
    discrepancies = []
    for participant_id in sorted(set(verdicts) | set(expected)):
        verdict = verdicts.get(participant_id)
        observed = verdict is not None and verdict.warned
        if observed != (participant_id in expected):
            discrepancy = Discrepancy(participant_id, participant_id in expected, observed)
            logger.warning("%r", discrepancy)
            discrepancies.append(discrepancy)
    return discrepancies
