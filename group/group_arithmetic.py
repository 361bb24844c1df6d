"""
Group Arithmetic and Domain-Separated Hashing
=============================================
Integers modulo the 4096-bit safe prime p (the ciphertext group) and modulo
its 256-bit prime subgroup order q (the exponent field), the fixed election
parameters, and the keyed hash every protocol value passes through.
"""

import logging
import secrets
import struct
from dataclasses import dataclass
from functools import cached_property
from typing import Optional, Union

import galois
from cryptography.hazmat.primitives import hashes, hmac

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

P_BYTES = 512
Q_BYTES = 32
HASH_BYTES = 32
INT_BYTES = 4

VERSION_DEFAULT = "v2.1.0"

Q_DEFAULT_HEX = "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF43"

P_DEFAULT_HEX = """
FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF
B17217F7D1CF79ABC9E3B39803F2F6AF40F343267298B62D8A0D175B8BAAFA2B
E7B876206DEBAC98559552FB4AFA1B10ED2EAE35C138214427573B291169B825
3E96CA16224AE8C51ACBDA11317C387EB9EA9BC3B136603B256FA0EC7657F74B
72CE87B19D6548CAF5DFA6BD38303248655FA1872F20E3A2DA2D97C50F3FD5C6
07F4CA11FB5BFB90610D30F88FE551A2EE569D6DFC1EFA157D2E23DE1400B396
17460775DB8990E5C943E732B479CD33CCCC4E659393514C4C1A1E0BD1D6095D
25669B333564A3376A9C7F8A5E148E82074DB6015CFE7AA30C480A5417350D2C
955D5179B1E17B9DAE313CDB6C606CB1078F735D1B2DB31B5F50B5185064C18B
4D162DB3B365853D7598A1951AE273EE5570B6C68F96983496D4E6D330AF889B
44A02554731CDC8EA17293D1228A4EF98D6F5177FBCF0755268A5C1F9538B982
61AFFD446B1CA3CF5E9222B88C66D3C5422183EDC99421090BBB16FAF3D949F2
36E02B20CEE886B905C128D53D0BD2F9621363196AF503020060E49908391A0C
57339BA2BEBA7D052AC5B61CC4E9207CEF2F0CE2D7373958D762265890445744
FB5F2DA4B751005892D356890DEFE9CAD9B9D4B713E06162A2D8FDD0DF2FD608
FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF
""".replace('\n', '')

R_DEFAULT_HEX = """
0100000000000000000000000000000000000000000000000000000000000000
BCB17217F7D1CF79ABC9E3B39803F2F6AF40F343267298B62D8A0D175B8BAB85
7AE8F428165418806C62B0EA36355A3A73E0C741985BF6A0E3130179BF2F0B43
E33AD862923861B8C9F768C4169519600BAD06093F964B27E02D86831231A916
0DE48F4DA53D8AB5E69E386B694BEC1AE722D47579249D5424767C5C33B9151E
07C5C11D106AC446D330B47DB59D352E47A53157DE04461900F6FE360DB897DF
5316D87C94AE71DAD0BE84B647C4BCF818C23A2D4EBB53C702A5C8062D19F5E9
B5033A94F7FF732F54129712869D97B8C96C412921A9D8679770F499A041C297
CFF79D4C9149EB6CAF67B9EA3DC563D965F3AAD1377FF22DE9C3E62068DD0ED6
151C37B4F74634C2BD09DA912FD599F4333A8D2CC005627DCA37BAD43E64A396
3119C0BFE34810A21EE7CFC421D53398CBC7A95B3BF585E5A04B790E2FE1FE9B
C264FDA8109F6454A082F5EFB2F37EA237AA29DF320D6EA860C41A9054CCD248
76C6253F667BFB0139B5531FF30189961202FD2B0D55A75272C7FD73343F7899
BCA0B36A4C470A64A009244C84E77CEBC92417D5BB13BF18167D8033EB6C4DD7
879FD4A7F529FD4A7F529FD4A7F529FD4A7F529FD4A7F529FD4A7F529FD4A7F5
2A
""".replace('\n', '')

G_DEFAULT_HEX = """
36036FED214F3B50DC566D3A312FE4131FEE1C2BCE6D02EA39B477AC05F7F885
F38CFE77A7E45ACF4029114C4D7A9BFE058BF2F995D2479D3DDA618FFD910D3C
4236AB2CFDD783A5016F7465CF59BBF45D24A22F130F2D04FE93B2D58BB9C1D1
D27FC9A17D2AF49A779F3FFBDCA22900C14202EE6C99616034BE35CBCDD3E7BB
7996ADFE534B63CCA41E21FF5DC778EBB1B86C53BFBE99987D7AEA0756237FB4
0922139F90A62F2AA8D9AD34DFF799E33C857A6468D001ACF3B681DB87DC4242
755E2AC5A5027DB81984F033C4D178371F273DBB4FCEA1E628C23E52759BC776
5728035CEA26B44C49A65666889820A45C33DD37EA4A1D00CB62305CD541BE1E
8A92685A07012B1A20A746C3591A2DB3815000D2AACCFE43DC49E828C1ED7387
466AFD8E4BF1935593B2A442EEC271C50AD39F733797A1EA11802A2557916534
662A6B7E9A9E449A24C8CFF809E79A4D806EB681119330E6C57985E39B200B48
93639FDFDEA49F76AD1ACD997EBA13657541E79EC57437E504EDA9DD01106151
6C643FB30D6D58AFCCD28B73FEDA29EC12B01A5EB86399A593A9D5F450DE39CB
92962C5EC6925348DB54D128FD99C14B457F883EC20112A75A6A0581D3D80A3B
4EF09EC86F9552FFDA1653F133AA2534983A6F31B0EE4697935A6B1EA2F75B85
E7EBA151BA486094D68722B054633FEC51CA3F29B31E77E317B178B6B9D8AE0F
""".replace('\n', '')

# ============================================================================
# DOMAIN SEPARATION TAGS
# ============================================================================

TAG_PARAMETER_BASE_HASH = b'\x00'
TAG_ELECTION_BASE_HASH = b'\x01'
TAG_KEY_PROOF = b'\x10'
TAG_SHARE_KEY = b'\x11'
TAG_SHARE_PROOF = b'\x12'
TAG_GUARDIAN_RECORD = b'\x13'
TAG_EXTENDED_BASE_HASH = b'\x14'
TAG_SELECTION_IDENTIFIER = b'\x20'
TAG_ENCRYPTION_NONCE = b'\x21'
TAG_BALLOT_NONCE_KEY = b'\x22'
TAG_BALLOT_NONCE_PROOF = b'\x23'
TAG_RANGE_PROOF = b'\x24'
TAG_CONTEST_DATA_KEY = b'\x25'
TAG_CONTEST_DATA_PROOF = b'\x26'
TAG_CONTEST_HASH = b'\x28'
TAG_CONFIRMATION_CODE = b'\x29'
TAG_DEVICE_HASH = b'\x2a'

# ============================================================================
# EXCEPTIONS
# ============================================================================


class ElectionGuardError(Exception):
    """Base exception for election cryptography"""
    pass


class InvalidInputError(ElectionGuardError):
    """Raised when a primitive receives malformed input"""
    pass


# ============================================================================
# FIELD ELEMENTS
# ============================================================================


def int_to_bytes(value: int) -> bytes:
    """Encode a small protocol integer (index, count, mode) as big-endian int32"""
    return struct.pack('>i', value)


def _operand_value(element, other) -> Optional[int]:
    if isinstance(other, type(element)):
        if other.modulus != element.modulus:
            raise InvalidInputError(
                f"Cannot combine elements of different moduli ({type(element).__name__})")
        return other.value
    if isinstance(other, int) and not isinstance(other, bool):
        return other
    return None


@dataclass(frozen=True)
class ElementModQ:
    """Exponent in [0, q)"""
    value: int
    modulus: int

    def __post_init__(self):
        object.__setattr__(self, 'value', self.value % self.modulus)

    def __add__(self, other):
        other_value = _operand_value(self, other)
        if other_value is None:
            return NotImplemented
        return ElementModQ(self.value + other_value, self.modulus)

    __radd__ = __add__

    def __sub__(self, other):
        other_value = _operand_value(self, other)
        if other_value is None:
            return NotImplemented
        return ElementModQ(self.value - other_value, self.modulus)

    def __rsub__(self, other):
        other_value = _operand_value(self, other)
        if other_value is None:
            return NotImplemented
        return ElementModQ(other_value - self.value, self.modulus)

    def __mul__(self, other):
        other_value = _operand_value(self, other)
        if other_value is None:
            return NotImplemented
        return ElementModQ(self.value * other_value, self.modulus)

    __rmul__ = __mul__

    def __neg__(self):
        return ElementModQ(-self.value, self.modulus)

    def __truediv__(self, other):
        other_value = _operand_value(self, other)
        if other_value is None:
            return NotImplemented
        return self * self._inverse(other_value)

    def __rtruediv__(self, other):
        other_value = _operand_value(self, other)
        if other_value is None:
            return NotImplemented
        return ElementModQ(other_value, self.modulus) * self._inverse(self.value)

    def __pow__(self, exponent: int):
        return ElementModQ(pow(self.value, exponent, self.modulus), self.modulus)

    def _inverse(self, value: int) -> int:
        if value % self.modulus == 0:
            raise ZeroDivisionError("Zero has no inverse mod q")
        # Fermat's little theorem
        return pow(value, self.modulus - 2, self.modulus)

    def __int__(self) -> int:
        return self.value

    def is_zero(self) -> bool:
        return self.value == 0

    def to_bytes(self) -> bytes:
        return self.value.to_bytes(Q_BYTES, 'big')

    @classmethod
    def from_bytes(cls, data: bytes, modulus: int) -> 'ElementModQ':
        return cls(int.from_bytes(data, 'big'), modulus)

    def __repr__(self) -> str:
        return f"ElementModQ({self.to_bytes().hex()[:16]}...)"


@dataclass(frozen=True)
class ElementModP:
    """Group element in [0, p)"""
    value: int
    modulus: int

    def __post_init__(self):
        object.__setattr__(self, 'value', self.value % self.modulus)

    def __mul__(self, other):
        other_value = _operand_value(self, other)
        if other_value is None:
            return NotImplemented
        return ElementModP(self.value * other_value, self.modulus)

    __rmul__ = __mul__

    def __truediv__(self, other):
        other_value = _operand_value(self, other)
        if other_value is None:
            return NotImplemented
        if other_value % self.modulus == 0:
            raise ZeroDivisionError("Zero has no inverse mod p")
        inverse = pow(other_value, self.modulus - 2, self.modulus)
        return ElementModP(self.value * inverse, self.modulus)

    def __pow__(self, exponent: Union[ElementModQ, int]):
        if isinstance(exponent, ElementModQ):
            exponent = exponent.value
        return ElementModP(pow(self.value, exponent, self.modulus), self.modulus)

    def __int__(self) -> int:
        return self.value

    def is_valid_residue(self, q: int) -> bool:
        """Membership in the order-q subgroup: 0 < x < p and x^q == 1"""
        return 0 < self.value < self.modulus and pow(self.value, q, self.modulus) == 1

    def to_bytes(self) -> bytes:
        return self.value.to_bytes(P_BYTES, 'big')

    @classmethod
    def from_bytes(cls, data: bytes, modulus: int) -> 'ElementModP':
        return cls(int.from_bytes(data, 'big'), modulus)

    def __repr__(self) -> str:
        return f"ElementModP({self.to_bytes().hex()[:16]}...)"


# ============================================================================
# DOMAIN HASH
# ============================================================================

HashInput = Union[bytes, bytearray, str, ElementModP, ElementModQ]


def _as_bytes(part: HashInput) -> bytes:
    if isinstance(part, (bytes, bytearray)):
        return bytes(part)
    if isinstance(part, str):
        return part.encode('utf-8')
    if hasattr(part, 'to_bytes') and not isinstance(part, int):
        return part.to_bytes()
    raise InvalidInputError(
        f"Cannot hash value of type {type(part).__name__}; encode it first")


class DomainHash:
    """HMAC-SHA256 keyed by a 32-byte hash from the base-hash chain.

    Callers pass the domain separation tag as the first part. Group
    elements and exponents are serialized through their fixed-width
    encodings so the byte string is identical across implementations.
    """

    @staticmethod
    def hash(key: bytes, *parts: HashInput) -> bytes:
        if key is None:
            raise InvalidInputError("Hash key is required")
        if len(key) != HASH_BYTES:
            raise InvalidInputError(
                f"Hash key must be {HASH_BYTES} bytes, got {len(key)}")
        if not parts:
            raise InvalidInputError("No values to be hashed")

        mac = hmac.HMAC(bytes(key), hashes.SHA256())
        for part in parts:
            mac.update(_as_bytes(part))
        return mac.finalize()

    @staticmethod
    def hash_mod(key: bytes, modulus: int, *parts: HashInput) -> int:
        return int.from_bytes(DomainHash.hash(key, *parts), 'big') % modulus


# ============================================================================
# PARAMETERS
# ============================================================================


@dataclass(frozen=True)
class CryptographicParameters:
    version: str
    p: int
    q: int
    r: int
    g: int

    @classmethod
    def default(cls) -> 'CryptographicParameters':
        return cls.from_hex(VERSION_DEFAULT, P_DEFAULT_HEX, Q_DEFAULT_HEX,
                            R_DEFAULT_HEX, G_DEFAULT_HEX)

    @classmethod
    def from_hex(cls, version: str, p_hex: str, q_hex: str, r_hex: str, g_hex: str) -> 'CryptographicParameters':
        return cls(
            version=version,
            p=int(p_hex, 16),
            q=int(q_hex, 16),
            r=int(r_hex, 16),
            g=int(g_hex, 16),
        )

    def version_bytes(self) -> bytes:
        """UTF-8 version string right-padded with zeros to 32 bytes"""
        encoded = self.version.encode('utf-8')
        if len(encoded) > HASH_BYTES:
            raise InvalidInputError(f"Version string too long: {self.version}")
        return encoded.ljust(HASH_BYTES, b'\x00')

    def is_well_formed(self) -> bool:
        """Check the group structure of a non-default parameter set"""
        if self.p.bit_length() > P_BYTES * 8 or self.q.bit_length() > Q_BYTES * 8:
            logger.warning("Parameters exceed canonical encoding widths")
            return False
        if self.p - 1 != self.q * self.r:
            logger.warning("p - 1 != q * r")
            return False
        if self.r % self.q == 0:
            logger.warning("q divides r")
            return False
        if not 1 < self.g < self.p or pow(self.g, self.q, self.p) != 1:
            logger.warning("g does not generate the order-q subgroup")
            return False
        if not galois.is_prime(self.q) or not galois.is_prime(self.p):
            logger.warning("p or q is not prime")
            return False
        return True


@dataclass(frozen=True)
class GuardianParameters:
    n: int
    k: int

    def __post_init__(self):
        if self.n < 1:
            raise InvalidInputError(f"Need at least one guardian, got n={self.n}")
        if not 1 <= self.k <= self.n:
            raise InvalidInputError(
                f"Threshold k={self.k} must be between 1 and n={self.n}")


@dataclass(frozen=True)
class KeyPair:
    secret_key: ElementModQ
    public_key: ElementModP


@dataclass(frozen=True)
class ElectionParameters:
    """Immutable configuration handed to every component.

    Bundles the group constants with the guardian counts and derives the
    parameter base hash, the root of the hash chain.
    """
    cryptographic: CryptographicParameters
    guardians: GuardianParameters

    @classmethod
    def create(cls, n: int, k: int, cryptographic: Optional[CryptographicParameters] = None) -> 'ElectionParameters':
        return cls(
            cryptographic=cryptographic or CryptographicParameters.default(),
            guardians=GuardianParameters(n=n, k=k),
        )

    @property
    def p(self) -> int:
        return self.cryptographic.p

    @property
    def q(self) -> int:
        return self.cryptographic.q

    @property
    def n(self) -> int:
        return self.guardians.n

    @property
    def k(self) -> int:
        return self.guardians.k

    @cached_property
    def generator(self) -> ElementModP:
        return ElementModP(self.cryptographic.g, self.p)

    @cached_property
    def parameter_base_hash(self) -> bytes:
        return compute_parameter_base_hash(self.cryptographic, self.guardians)

    def element_p(self, value: int) -> ElementModP:
        return ElementModP(value, self.p)

    def element_q(self, value: int) -> ElementModQ:
        return ElementModQ(value, self.q)

    def one_p(self) -> ElementModP:
        return ElementModP(1, self.p)

    def zero_q(self) -> ElementModQ:
        return ElementModQ(0, self.q)

    def g_pow(self, exponent: Union[ElementModQ, int]) -> ElementModP:
        return self.generator ** exponent

    def random_q(self) -> ElementModQ:
        """Uniform exponent by rejection sampling over 32 random bytes"""
        while True:
            candidate = int.from_bytes(secrets.token_bytes(Q_BYTES), 'big')
            if candidate < self.q:
                return ElementModQ(candidate, self.q)

    def random_keypair(self) -> KeyPair:
        secret = self.random_q()
        return KeyPair(secret_key=secret, public_key=self.g_pow(secret))

    def hash_to_q(self, key: bytes, *parts: HashInput) -> ElementModQ:
        return ElementModQ(DomainHash.hash_mod(key, self.q, *parts), self.q)


# ============================================================================
# HASH CHAIN
# ============================================================================


def compute_parameter_base_hash(cryptographic: CryptographicParameters, guardians: GuardianParameters) -> bytes:
    return DomainHash.hash(
        cryptographic.version_bytes(),
        TAG_PARAMETER_BASE_HASH,
        cryptographic.p.to_bytes(P_BYTES, 'big'),
        cryptographic.q.to_bytes(Q_BYTES, 'big'),
        cryptographic.g.to_bytes(P_BYTES, 'big'),
        int_to_bytes(guardians.n),
        int_to_bytes(guardians.k),
    )


def compute_election_base_hash(parameter_base_hash: bytes, manifest_bytes: bytes) -> bytes:
    return DomainHash.hash(parameter_base_hash, TAG_ELECTION_BASE_HASH, manifest_bytes)


def compute_extended_base_hash(election_base_hash: bytes, vote_key: ElementModP, data_key: ElementModP) -> bytes:
    return DomainHash.hash(election_base_hash, TAG_EXTENDED_BASE_HASH, vote_key, data_key)


def xor_bytes(left: bytes, right: bytes) -> bytes:
    if len(left) != len(right):
        raise InvalidInputError(
            f"XOR operands differ in length ({len(left)} != {len(right)})")
    return bytes(a ^ b for a, b in zip(left, right))
