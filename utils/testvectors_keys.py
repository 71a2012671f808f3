#!/usr/bin/env python3

""" Produces test vectors for the SSEV key derivations """

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

from ssev.config import Intensity
from ssev.protocols.client import encode_metadata
from ssev.protocols.keys import aem_key, derive_aem, derive_rpi, rpi_key

TEK0 = bytes.fromhex("75c734c6dd1a782de7a965da5eb93125")
ROLLING_START = 2642976


def main():
    print("## Test vectors of derived keys and identifiers ##\n")
    print("  * TEK = {}".format(TEK0.hex()))
    print("  * RPIK = {}".format(rpi_key(TEK0).hex()))
    print("  * AEMK = {}".format(aem_key(TEK0).hex()))

    for intensity in Intensity:
        metadata = encode_metadata(intensity)
        print("\n  * Metadata ({}) = {}".format(intensity.name, metadata.hex()))
        for i in [0, 1, 2, 143]:
            epoch = ROLLING_START + i
            print(
                "    - epoch {}: RPI = {}, AEM = {}".format(
                    epoch,
                    derive_rpi(TEK0, epoch).hex(),
                    derive_aem(TEK0, epoch, metadata).hex(),
                )
            )


if __name__ == "__main__":
    main()
