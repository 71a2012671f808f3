"""
Key derivation engine of the SSEV exposure notification protocol

Derivations follow the Exposure Notification cryptography specification
(v1.2): rolling proximity identifiers are AES-128 encryptions of the epoch
under a key derived from the TEK by HKDF-SHA256, and the associated metadata
is encrypted with AES-128-CTR using the RPI as IV.

This module has no notion of participants or wall-clock time. It only deals
with key material and epoch numbers.
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

import hmac
import secrets

from Cryptodome.Cipher import AES
from Cryptodome.Hash import SHA256
from Cryptodome.Protocol.KDF import HKDF
from Cryptodome.Util import Counter

from ssev.config import LENGTH_TEK, LENGTH_RPI, LENGTH_METADATA
from ssev.errors import EntropyError


#################################
### GLOBAL PROTOCOL CONSTANTS ###
#################################

#: HKDF info strings for domain separation
RPIK_INFO = "EN-RPIK".encode("ascii")
AEMK_INFO = "EN-AEMK".encode("ascii")

#: Prefix of the padded data block encrypted into an RPI
RPI_INFO = "EN-RPI".encode("ascii")

#: Length of the derived RPI and AEM keys
LENGTH_DERIVED_KEY = 16


#########################################
### BASIC CRYPTOGRAPHIC FUNCTIONALITY ###
#########################################


def generate_tek():
    """Returns a fresh random TEK

    Raises:
        EntropyError: If the operating system randomness source is unavailable
    """
    try:
        return secrets.token_bytes(LENGTH_TEK)
    except (OSError, NotImplementedError) as e:
        raise EntropyError("Randomness error while generating TEK: {}".format(e)) from e


def _hkdf(tek, info):
    return HKDF(tek, LENGTH_DERIVED_KEY, None, SHA256, context=info)


def rpi_key(tek):
    """Derive the rolling proximity identifier key (RPIK) of a TEK"""
    return _hkdf(tek, RPIK_INFO)


def aem_key(tek):
    """Derive the associated encrypted metadata key (AEMK) of a TEK"""
    return _hkdf(tek, AEMK_INFO)


def padded_data(epoch):
    """Compute the block 'EN-RPI' || 0x000000000000 || LE32(epoch)

    Raises:
        ValueError: If the epoch does not fit into 32 bits
    """
    if not 0 <= epoch < 2 ** 32:
        raise ValueError("Epoch {} is not representable".format(epoch))
    return RPI_INFO + bytes(6) + epoch.to_bytes(4, "little")


def rpi_from_key(rpik, epoch):
    """Compute the RPI given an already derived RPIK"""
    cipher = AES.new(rpik, AES.MODE_ECB)
    return cipher.encrypt(padded_data(epoch))


def derive_rpi(tek, epoch):
    """Compute the rolling proximity identifier of a TEK for an epoch

    Args:
        tek (byte array): A 16 to 32-byte TEK
        epoch (int): The epoch number

    Returns:
        byte array: The 16-byte RPI
    """
    return rpi_from_key(rpi_key(tek), epoch)


def _aem_cipher(tek, rpi):
    # AES-CTR with the RPI as 128-bit initial counter block
    counter = Counter.new(128, initial_value=int.from_bytes(rpi, "big"))
    return AES.new(aem_key(tek), AES.MODE_CTR, counter=counter)


def derive_aem(tek, epoch, metadata):
    """Encrypt metadata into the associated encrypted metadata of an epoch

    Args:
        tek (byte array): A 16 to 32-byte TEK
        epoch (int): The epoch number
        metadata (byte array): The plaintext metadata

    Returns:
        byte array: The AEM, of the same length as metadata
    """
    return _aem_cipher(tek, derive_rpi(tek, epoch)).encrypt(metadata)


def decrypt_aem(tek, epoch, aem):
    """Recover the metadata from an AEM given the TEK and the epoch"""
    return _aem_cipher(tek, derive_rpi(tek, epoch)).decrypt(aem)


def derive_rpis(tek, rolling_start, rolling_period, epochs=None):
    """Regenerate the RPIs of all epochs a TEK is valid for

    Args:
        tek (byte array): A 16 to 32-byte TEK
        rolling_start (int): First epoch the TEK is valid for
        rolling_period (int): Number of epochs the TEK is valid for
        epochs (iterable of int, optional): Only derive RPIs for these epochs
            (epochs outside the validity of the TEK are ignored)

    Returns:
        dictionary: For each epoch the corresponding RPI
    """
    rpik = rpi_key(tek)
    valid = range(rolling_start, rolling_start + rolling_period)
    if epochs is None:
        epochs = valid
    return {epoch: rpi_from_key(rpik, epoch) for epoch in epochs if epoch in valid}


######################
### DIAGNOSIS KEYS ###
######################


class DiagnosisKey:
    """A TEK published by (or on behalf of) a diagnosed participant

    Args:
        tek (byte array): The key material
        rolling_start (int): First epoch the TEK is valid for
        rolling_period (int): Number of epochs the TEK is valid for
        diagnosis_epoch (int): The declared diagnosis epoch of the report
        hop (int, optional): 0 for the diagnosed participant's own key, h for a
            key forwarded by a participant warned h hops away
        epochs (iterable of int, optional): Restrict matching to these epochs
        report_id (int, optional): Server assigned id of the diagnosis report
    """

    def __init__(
        self,
        tek,
        rolling_start,
        rolling_period,
        diagnosis_epoch,
        hop=0,
        epochs=None,
        report_id=None,
    ):
        self.tek = bytes(tek)
        self.rolling_start = rolling_start
        self.rolling_period = rolling_period
        self.diagnosis_epoch = diagnosis_epoch
        self.hop = hop
        self.epochs = None if epochs is None else tuple(sorted(set(epochs)))
        self.report_id = report_id

    def covered_epochs(self):
        """The epochs this key produced RPIs for"""
        return range(self.rolling_start, self.rolling_start + self.rolling_period)

    def candidate_epochs(self, window=None):
        """Covered epochs this key may match at, optionally within a window"""
        epochs = self.covered_epochs() if self.epochs is None else self.epochs
        return [
            epoch
            for epoch in epochs
            if epoch in self.covered_epochs() and (window is None or epoch in window)
        ]

    def with_report_id(self, report_id):
        return DiagnosisKey(
            self.tek,
            self.rolling_start,
            self.rolling_period,
            self.diagnosis_epoch,
            hop=self.hop,
            epochs=self.epochs,
            report_id=report_id,
        )

    def to_dict(self):
        return {
            "tek": self.tek.hex(),
            "rolling_start": self.rolling_start,
            "rolling_period": self.rolling_period,
            "diagnosis_epoch": self.diagnosis_epoch,
            "hop": self.hop,
            "epochs": None if self.epochs is None else list(self.epochs),
            "report_id": self.report_id,
        }

    @classmethod
    def from_dict(cls, data):
        """Decode a key from its wire representation

        Raises:
            ValueError: If the representation is malformed
        """
        try:
            return cls(
                bytes.fromhex(data["tek"]),
                data["rolling_start"],
                data["rolling_period"],
                data["diagnosis_epoch"],
                hop=data.get("hop", 0),
                epochs=data.get("epochs"),
                report_id=data.get("report_id"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError("Malformed diagnosis key: {!r}".format(data)) from e

    def _fields(self):
        return (
            self.tek,
            self.rolling_start,
            self.rolling_period,
            self.diagnosis_epoch,
            self.hop,
            self.epochs,
            self.report_id,
        )

    def __eq__(self, other):
        if not isinstance(other, DiagnosisKey):
            return NotImplemented
        return self._fields() == other._fields()

    def __hash__(self):
        return hash(self._fields())

    def __repr__(self):
        return "DiagnosisKey({}..., start={}, period={}, diagnosis={}, hop={})".format(
            self.tek[:4].hex(),
            self.rolling_start,
            self.rolling_period,
            self.diagnosis_epoch,
            self.hop,
        )


################
### MATCHING ###
################


def matching_epoch(diagnosis_key, encounter):
    """Return the epoch at which a diagnosis key produced an observed RPI

    Recomputes the RPI of every epoch the key may match at and compares it
    with the observed RPI in constant time.

    Args:
        diagnosis_key (:obj:`DiagnosisKey`): The published key
        encounter: Any object with `rpi` and `aem` attributes

    Returns:
        int or None: the epoch of the matching RPI, None if nothing matches
    """
    if len(encounter.rpi) != LENGTH_RPI:
        return None
    if encounter.aem is not None and len(encounter.aem) != LENGTH_METADATA:
        return None

    rpis = derive_rpis(
        diagnosis_key.tek,
        diagnosis_key.rolling_start,
        diagnosis_key.rolling_period,
        epochs=diagnosis_key.candidate_epochs(),
    )
    for epoch, rpi in rpis.items():
        if hmac.compare_digest(rpi, encounter.rpi):
            return epoch
    return None


def match_candidate(diagnosis_key, encounter):
    """Whether the observed RPI of an encounter was produced by the key"""
    return matching_epoch(diagnosis_key, encounter) is not None
