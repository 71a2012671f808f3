"""
Run a contact graph through the live protocol and check the outcome

Every participant runs in its own thread and proceeds through its epochs at
its own pace. Participants only talk to each other through beacons on the
:obj:`ProximityMedium` and to the diagnosis server through JSON messages.
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
import queue
import threading
import time
from collections import namedtuple

from ssev.errors import ExposureError, TransportError
from ssev.protocols.client import ContactTracer
from ssev.protocols.server import ChunkTimer, DiagnosisServer, DiagnosisServerHandler
from ssev.protocols.transport import DiagnosisServerStub, LocalChannel
from ssev.verification import compare, expected_warned

logger = logging.getLogger(__name__)


#: What a participant broadcasts to a peer it meets
Beacon = namedtuple("Beacon", ["epoch", "rpi", "aem", "sender"])


class ProximityMedium:
    """Delivers beacons between participants, in place of Bluetooth"""

    def __init__(self):
        self._inboxes = {}

    def register(self, participant_id):
        self._inboxes[participant_id] = queue.Queue()

    def send(self, recipient, beacon):
        self._inboxes[recipient].put(beacon)

    def receive(self, participant_id):
        """Return all beacons delivered to a participant since the last call"""
        inbox = self._inboxes[participant_id]
        beacons = []
        while True:
            try:
                beacons.append(inbox.get_nowait())
            except queue.Empty:
                return beacons


class ParticipantRunner(threading.Thread):
    """Drive one :obj:`ContactTracer` through its epochs, then keep polling

    Args:
        tracer (:obj:`ContactTracer`): The participant's app
        schedule ([:obj:`ssev.contacts.ScheduledContact`]): Its contacts
        last_epoch (int): The epoch loop ends here
        medium (:obj:`ProximityMedium`): Beacon delivery
        diagnosis_epoch (int, optional): When the participant is diagnosed
        epoch_pause (float, optional): Seconds to wait between epochs
    """

    def __init__(self, tracer, schedule, last_epoch, medium, diagnosis_epoch=None, epoch_pause=0.0):
        super().__init__(name="participant-{}".format(tracer.participant_id), daemon=True)
        self.tracer = tracer
        self.last_epoch = last_epoch
        self.medium = medium
        self.diagnosis_epoch = diagnosis_epoch
        self.epoch_pause = epoch_pause
        self.refresh_period = tracer.params.refresh_period
        self.error = None

        self.epochs_done = threading.Event()
        self._stopped = threading.Event()
        self._report_pending = False

        self._schedule = {}
        for contact in schedule:
            self._schedule.setdefault(contact.epoch, []).append(contact)

    @property
    def participant_id(self):
        return self.tracer.participant_id

    def stop(self):
        self._stopped.set()

    def run(self):
        try:
            self._run_epochs()
            self.epochs_done.set()
            self._run_polling()
        except ExposureError as e:
            logger.error("%s stopped: %s", self.participant_id, e)
            self.error = e
        finally:
            self.epochs_done.set()

    def _run_epochs(self):
        last_poll = time.monotonic()
        while not self._stopped.is_set():
            epoch = self.tracer.current_epoch
            for contact in self._schedule.get(epoch, ()):
                rpi, aem = self.tracer.beacon(contact.intensity)
                self.medium.send(
                    contact.peer, Beacon(epoch, rpi, aem, self.participant_id)
                )
            self._receive()

            if epoch == self.diagnosis_epoch:
                self._report_pending = True
                self._report()

            if time.monotonic() - last_poll >= self.refresh_period:
                self._poll()
                last_poll = time.monotonic()

            if epoch >= self.last_epoch:
                return
            if self.epoch_pause:
                self._stopped.wait(self.epoch_pause)
            self.tracer.next_epoch()

    def _run_polling(self):
        while not self._stopped.wait(self.refresh_period):
            self._receive()
            self._poll()

    def _receive(self):
        for beacon in self.medium.receive(self.participant_id):
            self.tracer.record_encounter(
                beacon.rpi, beacon.aem, beacon.epoch, peer_id=beacon.sender
            )

    def _report(self):
        try:
            self.tracer.report_diagnosis(self.diagnosis_epoch)
            self._report_pending = False
        except TransportError as e:
            logger.warning("%s: reporting failed, will retry: %s", self.participant_id, e)

    def _poll(self):
        if self._report_pending:
            self._report()
        self.tracer.poll()


class SimulationResult:
    """Verdicts of a run, next to the verifier's prediction"""

    def __init__(self, verdicts, expected, discrepancies):
        self.verdicts = verdicts
        self.expected = expected
        self.discrepancies = discrepancies

    @property
    def warned(self):
        return {pid for pid, verdict in self.verdicts.items() if verdict.warned}

    @property
    def consistent(self):
        return not self.discrepancies


class Simulation:
    """Run all participants of a contact graph against one diagnosis server

    The ground truth is computed when the simulation is configured. After all
    participants went through their epochs, the run continues for the
    observation period so that uploads get sealed and downloaded.

    Args:
        graph (:obj:`ssev.contacts.ContactGraph`): Who meets whom, when
        params (:obj:`ssev.config.SystemParams`): System parameters
        observation_period (float, optional): Seconds to observe after the
            epoch loops ended. Defaults to enough chunk intervals and polls
            for every hop.
        epoch_pause (float, optional): Seconds each participant waits per epoch

    Raises:
        ConfigurationError: If the graph does not fit the parameters
    """

    def __init__(self, graph, params, observation_period=None, epoch_pause=0.0):
        graph.validate(params)
        if observation_period is None:
            observation_period = (
                2 * (params.hop_limit + 1) * (params.chunk_period + params.refresh_period)
            )

        self.graph = graph
        self.params = params
        self.observation_period = observation_period
        self.epoch_pause = epoch_pause
        self.expected = expected_warned(graph, params)

    def run(self):
        """Run the live protocol and compare the verdicts with the ground truth

        Returns:
            :obj:`SimulationResult`
        """
        server = DiagnosisServer(self.params)
        handler = DiagnosisServerHandler(server)
        timer = ChunkTimer(server)
        medium = ProximityMedium()
        first_epoch = self.graph.first_epoch(self.params)

        runners = []
        for participant in self.graph.participants.values():
            medium.register(participant.id)
            tracer = ContactTracer(
                participant.id,
                self.params,
                DiagnosisServerStub(LocalChannel(handler)),
                first_epoch,
            )
            runners.append(
                ParticipantRunner(
                    tracer,
                    self.graph.schedule_for(participant.id),
                    self.graph.today,
                    medium,
                    diagnosis_epoch=participant.diagnosis_epoch,
                    epoch_pause=self.epoch_pause,
                )
            )

        logger.info(
            "Running %d participants through epochs %d to %d",
            len(runners),
            first_epoch,
            self.graph.today,
        )
        timer.start()
        for runner in runners:
            runner.start()

        try:
            for runner in runners:
                runner.epochs_done.wait()
            logger.info("Observing for %.2f seconds", self.observation_period)
            time.sleep(self.observation_period)
        finally:
            for runner in runners:
                runner.stop()
            for runner in runners:
                runner.join()
            timer.stop()
            timer.join()

        verdicts = {runner.participant_id: runner.tracer.verdict for runner in runners}
        discrepancies = compare(self.expected, verdicts)
        return SimulationResult(verdicts, set(self.expected), discrepancies)
