#!/usr/bin/env python3

""" Simple example/demo of the SSEV exposure notification protocol

This demo simulates an event attended by Alice, Bob and Carol. Alice is
diagnosed, Bob receives a direct warning and forwards a key for the event,
so that Carol is warned as well. Dave met Carol on another day and stays
unaffected.
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


from datetime import datetime, timezone

from ssev.config import Intensity, SystemParams
from ssev.epochs import epoch_from_time, time_from_epoch
from ssev.protocols.client import ContactTracer
from ssev.protocols.server import DiagnosisServer


def report_epoch(epoch):
    """
    Convenience function to report the current epoch
    """
    print("---- {} (epoch {}) ----".format(time_from_epoch(epoch), epoch))


def interact(first, second, intensity):
    """
    Convenience function, let two phones observe each other's beacons
    """
    epoch = first.current_epoch
    for observer, sender in ((first, second), (second, first)):
        rpi, aem = sender.beacon(intensity)
        observer.record_encounter(rpi, aem, epoch, peer_id=sender.participant_id)
        print(
            "  {} observes {}'s RPI {}".format(
                observer.participant_id, sender.participant_id, rpi.hex()
            )
        )


def advance(apps, epochs):
    for _ in range(epochs):
        for app in apps:
            app.next_epoch()


def seal_chunk(server):
    index = server.advance_chunk_interval(server.open_interval.end)
    print("[Server] Seals chunk {}".format(index))


def main():
    params = SystemParams(hop_limit=2)
    start = epoch_from_time(datetime(2021, 3, 1, tzinfo=timezone.utc))
    server = DiagnosisServer(params, start_time=0.0)

    alice, bob, carol, dave = (
        ContactTracer(name, params, server, start) for name in ("Alice", "Bob", "Carol", "Dave")
    )
    apps = [alice, bob, carol, dave]

    ### Interaction ###

    # The event takes place in the afternoon
    advance(apps, 6 * 15)
    report_epoch(alice.current_epoch)
    print("Alice, Bob and Carol attend the same event:")
    interact(alice, bob, Intensity.HIGH_RISK)
    interact(bob, carol, Intensity.HIGH_RISK)
    print("")

    advance(apps, 2 * 144)
    report_epoch(carol.current_epoch)
    print("Carol and Dave meet:")
    interact(carol, dave, Intensity.HIGH_RISK)
    print("")

    print("... skipping 3 days ...\n")
    advance(apps, 3 * 144)

    ### Diagnosis and reporting ###

    report_epoch(alice.current_epoch)
    print("Alice is diagnosed with SARS-CoV-2")
    ack = alice.report_diagnosis()
    print("[Alice -> Server] Alice uploads {} keys as report {}".format(ack.accepted, ack.report_id))
    seal_chunk(server)

    ### Contact tracing ###

    print("\n[Server -> Bob] Bob downloads the chunk")
    bob.poll()
    if bob.verdict.risk is Intensity.HIGH_RISK:
        print("  * CORRECT: Bob's phone concludes Bob is at risk")
    else:
        print("  * ERROR: Bob's phone does not conclude Bob is at risk")
        raise RuntimeError("Example code failed!")
    print("  * Bob forwards the key of the event day")
    seal_chunk(server)

    print("\n[Server -> Carol, Dave] Carol and Dave download all chunks")
    carol.poll()
    dave.poll()

    [match] = carol.verdict.matches
    if match.hop == 1:
        print("  * CORRECT: Carol's phone concludes Carol attended a risky event")
    else:
        print("  * ERROR: Carol's phone does not conclude Carol is at risk")
        raise RuntimeError("Example code failed!")

    if not dave.verdict.warned:
        print("  * CORRECT: Dave's phone does not raise a warning")
    else:
        print("  * ERROR: Dave's phone concludes Dave is at risk")
        raise RuntimeError("Example code failed!")


if __name__ == "__main__":
    main()
