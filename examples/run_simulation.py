#!/usr/bin/env python3

""" Run the example contact graph through the live SSEV protocol

Every participant runs in its own thread, the diagnosis server seals a chunk
every CHUNK_PERIOD seconds. Afterwards, the warnings raised by the phones are
compared with the ones predicted from the full contact graph.
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

from ssev.config import SystemParams
from ssev.contacts import ContactGraph
from ssev.simulation import Simulation

# Much shorter than in deployment, so that the demo finishes quickly
CHUNK_PERIOD = 0.1
REFRESH_PERIOD = 0.05


def main():
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(threadName)s %(name)s: %(message)s"
    )

    graph = ContactGraph.example()
    for hop_limit in (1, 2, 3):
        params = SystemParams(
            hop_limit=hop_limit, chunk_period=CHUNK_PERIOD, refresh_period=REFRESH_PERIOD
        )
        print("\n==== Hop limit {} ====".format(hop_limit))
        result = Simulation(graph, params).run()

        for participant_id, verdict in sorted(result.verdicts.items()):
            print(
                "  * {}: {}".format(
                    participant_id,
                    "warned ({})".format(verdict.risk.name) if verdict.warned else "not warned",
                )
            )

        if result.consistent:
            print("  * CORRECT: the phones agree with the contact graph")
        else:
            print("  * ERROR: {}".format(result.discrepancies))
            raise RuntimeError("Example code failed!")


if __name__ == "__main__":
    main()
