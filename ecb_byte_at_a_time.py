#!/usr/bin/env python3
import base64
import itertools
import logging
from secrets import token_bytes
from typing import Any, Callable, Dict, Optional, Tuple
from collections import namedtuple
from blockutil import (aes_ecb_encrypt, aes_cbc_encrypt, as_bytes, chunkify, identify_ciphertexts_encrypted_with_ecb,
                       BlockCipherMode, AttackCancelled, DiscoveryFailed, NoMatchingCandidate, ProbeAmbiguous)

"""
Byte-at-a-time ECB decryption

Given an oracle that produces

    ECB(random-prefix || attacker-controlled || target-bytes, random-key)

recover target-bytes. The random prefix may be empty.

1. Feed the oracle growing runs of filler until the ciphertext grows. The size of the jump is the block size.
2. Feed it three blocks of filler. ECB turns the (at least two) aligned ones into identical ciphertext blocks.
3. Find how much filler it takes to push our input onto a block boundary. That gives the prefix length, and with it
   the suffix length.
4. For each byte of the suffix, line it up as the last byte of a block whose other bytes we know, build a dictionary
   of all 256 possible blocks, and look the real one up.
"""


BLOCK_SIZE = 16

# The ciphertext has to grow within this much filler or it's not a block cipher we can deal with
MAX_BLOCK_SIZE_PROBE = 128

FILLER = b"Z"

log = logging.getLogger(__name__)

# Takes attacker-controlled bytes, returns ciphertext
EncryptionOracle = Callable[[bytes], bytes]


class AppendAndEncryptOracle:
    """
    Encrypts prefix || attacker-controlled || suffix under a key that's fixed for the life of the oracle

    The key and prefix come out of random_bytes (unless they're given) when the oracle is built, so a test can hand
    in a deterministic source. mode=BlockCipherMode.CBC gives an oracle with the same shape that isn't ECB
    """
    prefix: bytes
    suffix: bytes
    key: bytes
    iv: bytes
    mode: BlockCipherMode
    verbose: bool

    def __init__(self,
                 suffix: Any,
                 prefix_length_range: Tuple[int, int] = (0, 0),
                 prefix: Optional[Any] = None,
                 key: Optional[bytes] = None,
                 mode: BlockCipherMode = BlockCipherMode.ECB,
                 random_bytes: Callable[[int], bytes] = token_bytes,
                 verbose: bool = False):
        """
        >>> AppendAndEncryptOracle(b"secret", prefix_length_range=(-1, 5))
        Traceback (most recent call last):
        ValueError: Minimum prefix length must be >= 0
        >>> AppendAndEncryptOracle(b"secret", prefix_length_range=(6, 5))
        Traceback (most recent call last):
        ValueError: Maximum prefix length must be >= minimum prefix length

        >>> oracle = AppendAndEncryptOracle(b"secret", prefix_length_range=(5, 10))
        >>> 5 <= len(oracle.prefix) <= 10
        True

        A fixed source of randomness gives a fixed key and prefix

        >>> oracle = AppendAndEncryptOracle(b"secret", prefix_length_range=(3, 9), random_bytes=lambda n: bytes(n))
        >>> oracle.prefix, oracle.key
        (b'\\x00\\x00\\x00', b'\\x00\\x00\\x00\\x00\\x00\\x00\\x00\\x00\\x00\\x00\\x00\\x00\\x00\\x00\\x00\\x00')
        >>> len(AppendAndEncryptOracle(b"secret", prefix_length_range=(3, 9), random_bytes=lambda n: b"\\x01" * n).prefix)
        8
        """
        self.suffix = as_bytes(suffix)
        self.key = key if key is not None else random_bytes(BLOCK_SIZE)
        if prefix is None:
            prefix_min, prefix_max = prefix_length_range
            if prefix_min < 0:
                raise ValueError("Minimum prefix length must be >= 0")
            if prefix_max < prefix_min:
                raise ValueError("Maximum prefix length must be >= minimum prefix length")
            # The length comes out of random_bytes too, so a fixed source gives a fixed prefix
            prefix_length = prefix_min + int.from_bytes(random_bytes(2), "big") % (prefix_max - prefix_min + 1)
            prefix = random_bytes(prefix_length)
        self.prefix = as_bytes(prefix)
        self.mode = mode
        # Only used in CBC mode. Fixed so that the oracle stays deterministic
        self.iv = random_bytes(BLOCK_SIZE)
        self.verbose = verbose

    def encrypt(self, attacker_bytes: Any) -> bytes:
        """
        >>> oracle = AppendAndEncryptOracle(b"secret", prefix=b"junk", key=b"YELLOW SUBMARINE")
        >>> oracle.encrypt(b"AAAA") == aes_ecb_encrypt(b"junkAAAAsecret", key=b"YELLOW SUBMARINE")
        True
        >>> oracle.encrypt("AAAA") == oracle.encrypt(b"AAAA")
        True
        """
        pt = self.prefix + as_bytes(attacker_bytes) + self.suffix
        if self.mode is BlockCipherMode.ECB:
            ct = aes_ecb_encrypt(pt, key=self.key)
        else:
            ct = aes_cbc_encrypt(pt, key=self.key, iv=self.iv)
        if self.verbose:
            print(f"{attacker_bytes!r} --> {ct[:5]!r}...")
        return ct


BlockSizeProbe = namedtuple("BlockSizeProbe", ["block_size", "fill_length", "unknown_length"])
PrefixLocation = namedtuple("PrefixLocation", ["boundary", "padding_length", "prefix_length"])
Interrogation = namedtuple("Interrogation", ["block_size", "prefix_length", "suffix_length"])


def discover_block_size(oracle: EncryptionOracle, max_probe: int = MAX_BLOCK_SIZE_PROBE) -> BlockSizeProbe:
    """
    Feed the oracle more and more filler until its ciphertext grows. The amount it grows by is the block size.

    fill_length is the amount of filler that caused the jump, and unknown_length is how many bytes the oracle adds
    around our input (prefix and suffix together). The jump happens when PKCS#7 has to add a whole block of padding,
    so at that point the plaintext is exactly one block shorter than the ciphertext.

    >>> discover_block_size(AppendAndEncryptOracle(suffix=b"A" * 8).encrypt)
    BlockSizeProbe(block_size=16, fill_length=8, unknown_length=8)
    >>> discover_block_size(AppendAndEncryptOracle(suffix=b"A" * 24, prefix=b"B" * 3).encrypt)
    BlockSizeProbe(block_size=16, fill_length=5, unknown_length=27)

    >>> all(discover_block_size(AppendAndEncryptOracle(suffix=b"A" * n).encrypt).block_size == 16
    ...     for n in range(1, 41))
    True

    CBC has the same block size, it just isn't ECB

    >>> discover_block_size(AppendAndEncryptOracle(suffix=b"A" * 8, mode=BlockCipherMode.CBC).encrypt).block_size
    16

    >>> discover_block_size(lambda attacker_bytes: bytes(16))
    Traceback (most recent call last):
    blockutil.DiscoveryFailed: Ciphertext never grew over 128 bytes of filler
    """
    base_len_ct = len(oracle(b""))
    for i in range(1, max_probe + 1):
        new_len = len(oracle(FILLER * i))
        if new_len > base_len_ct:
            block_size = new_len - base_len_ct
            return BlockSizeProbe(block_size=block_size,
                                  fill_length=i,
                                  unknown_length=new_len - block_size - i)
    raise DiscoveryFailed(f"Ciphertext never grew over {max_probe} bytes of filler")


def confirm_ecb(oracle: EncryptionOracle, block_size: int) -> None:
    """
    Raise DiscoveryFailed unless the oracle is a block cipher in ECB mode

    Three blocks of filler always leaves at least two of them block-aligned, whatever the oracle prepends

    >>> confirm_ecb(AppendAndEncryptOracle(suffix=b"secret", prefix_length_range=(0, 40)).encrypt, 16)

    >>> confirm_ecb(AppendAndEncryptOracle(suffix=b"secret", mode=BlockCipherMode.CBC).encrypt, 16)
    Traceback (most recent call last):
    blockutil.DiscoveryFailed: Oracle is not operating in ECB mode

    >>> confirm_ecb(lambda attacker_bytes: attacker_bytes, 1)
    Traceback (most recent call last):
    blockutil.DiscoveryFailed: A block size of 1 isn't a block cipher
    """
    if block_size < 2:
        raise DiscoveryFailed(f"A block size of {block_size} isn't a block cipher")
    ct = oracle(FILLER * block_size * 3)
    if not identify_ciphertexts_encrypted_with_ecb([ct], block_size):
        raise DiscoveryFailed("Oracle is not operating in ECB mode")


def pairwise(iterable):
    # pairwise('ABCDEFG') --> AB BC CD DE EF FG
    a, b = itertools.tee(iterable)
    next(b, None)
    return zip(a, b)


def locate_prefix(oracle: EncryptionOracle,
                  block_size: int,
                  random_bytes: Callable[[int], bytes] = token_bytes) -> PrefixLocation:
    """
    Work out how much filler pushes our input onto a block boundary, and where that boundary is

    Sends a growing amount of filler followed by two copies of a random block. Once the two copies land on block
    boundaries they encrypt to two identical adjacent blocks. Adjacent identical blocks can also come from repetition
    inside the prefix or suffix, or from the tail of our block wrapping round into a suffix that happens to start the
    same way. So every hit gets sent again with two copies of a block that differs from the first one in every byte.
    Only a real alignment gives a pair that is still identical but has changed.

    >>> oracle = AppendAndEncryptOracle(suffix=b"secret")
    >>> locate_prefix(oracle.encrypt, 16)
    PrefixLocation(boundary=0, padding_length=0, prefix_length=0)
    >>> oracle = AppendAndEncryptOracle(suffix=b"secret", prefix=b"Q" * 21)
    >>> locate_prefix(oracle.encrypt, 16)
    PrefixLocation(boundary=32, padding_length=11, prefix_length=21)

    >>> all(locate_prefix(AppendAndEncryptOracle(suffix=b"secret", prefix_length_range=(n, n)).encrypt,
    ...                   16).prefix_length == n
    ...     for n in range(48))
    True

    Repetition in the prefix and suffix doesn't fool it

    >>> oracle = AppendAndEncryptOracle(suffix=b"Y" * 48 + b"end", prefix=b"Q" * 40)
    >>> locate_prefix(oracle.encrypt, 16)
    PrefixLocation(boundary=48, padding_length=8, prefix_length=40)

    Nor does a suffix that starts with the same byte as our block, one byte short of alignment

    >>> oracle = AppendAndEncryptOracle(suffix=b"secret", prefix=b"Q" * 15)
    >>> locate_prefix(oracle.encrypt, 16, random_bytes=lambda n: b"s" * n)
    PrefixLocation(boundary=16, padding_length=1, prefix_length=15)

    Nor a source of randomness that always gives the same bytes, even when the prefix is made of them

    >>> oracle = AppendAndEncryptOracle(suffix=b"secret", prefix=bytes(5))
    >>> locate_prefix(oracle.encrypt, 16, random_bytes=lambda n: bytes(n))
    PrefixLocation(boundary=16, padding_length=11, prefix_length=5)

    An oracle that ignores our input can't be aligned to

    >>> locate_prefix(lambda attacker_bytes: aes_ecb_encrypt(b"A" * 64, key=bytes(16)), 16)
    Traceback (most recent call last):
    blockutil.ProbeAmbiguous: Couldn't block-align input after 16 attempts
    """
    block = random_bytes(block_size)
    # Differs from block in every byte whatever random_bytes gave us
    other_block = bytes(b ^ 0xff for b in block)
    for padding_length in range(block_size):
        padding = FILLER * padding_length
        ct_chunked = list(chunkify(oracle(padding + block * 2), block_size))
        for j, (c1, c2) in enumerate(pairwise(ct_chunked)):
            if c1 != c2:
                continue
            # We've managed to block-align our two 'block' blocks
            # OR there is otherwise some adjacent block redundancy
            control = list(chunkify(oracle(padding + other_block * 2), block_size))
            if control[j] == control[j + 1] and control[j] != c1:
                return PrefixLocation(boundary=block_size * j,
                                      padding_length=padding_length,
                                      prefix_length=block_size * j - padding_length)
    raise ProbeAmbiguous(f"Couldn't block-align input after {block_size} attempts")


def interrogate_appending_oracle(oracle: EncryptionOracle,
                                 random_bytes: Callable[[int], bytes] = token_bytes) -> Interrogation:
    """
    >>> suffix = b"A" * 8
    >>> oracle = AppendAndEncryptOracle(suffix=suffix)
    >>> interrogate_appending_oracle(oracle.encrypt)
    Interrogation(block_size=16, prefix_length=0, suffix_length=8)

    >>> oracle = AppendAndEncryptOracle(suffix=suffix, prefix_length_range=(40, 60))
    >>> block_size, prefix_length, suffix_length = interrogate_appending_oracle(oracle.encrypt)
    >>> (block_size, prefix_length, suffix_length) == (16, len(oracle.prefix), len(suffix))
    True

    >>> interrogate_appending_oracle(AppendAndEncryptOracle(suffix=suffix, mode=BlockCipherMode.CBC).encrypt)
    Traceback (most recent call last):
    blockutil.DiscoveryFailed: Oracle is not operating in ECB mode
    """
    block_size, _, unknown_length = discover_block_size(oracle)
    confirm_ecb(oracle, block_size)
    prefix_length = locate_prefix(oracle, block_size, random_bytes=random_bytes).prefix_length
    interrogation = Interrogation(block_size=block_size,
                                  prefix_length=prefix_length,
                                  suffix_length=unknown_length - prefix_length)
    log.info("Interrogated oracle: %r", interrogation)
    return interrogation


def build_candidate_map(oracle: EncryptionOracle, known: bytes, offset: int, block_size: int) -> Dict[bytes, int]:
    """
    Encrypt known || b for every byte b, and map the ciphertext block at offset back to b

    >>> oracle = AppendAndEncryptOracle(suffix=b"secret")
    >>> candidates = build_candidate_map(oracle.encrypt, FILLER * 15, 0, 16)
    >>> len(candidates)
    256
    >>> candidates[oracle.encrypt(FILLER * 15 + b"s")[:16]] == ord("s")
    True

    An oracle that throws away the last byte we send gives every candidate the same block

    >>> build_candidate_map(lambda attacker_bytes: oracle.encrypt(attacker_bytes[:-1]), FILLER * 15, 0, 16)
    Traceback (most recent call last):
    blockutil.ProbeAmbiguous: Candidates 0x00 and 0x01 encrypt to the same block
    """
    candidates: Dict[bytes, int] = {}
    # Every byte value, 0xff included
    for b in range(256):
        block = oracle(known + bytes([b]))[offset:offset + block_size]
        if block in candidates:
            raise ProbeAmbiguous(f"Candidates {candidates[block]:#04x} and {b:#04x} encrypt to the same block")
        candidates[block] = b
    return candidates


def leak_suffix_from_appending_ecb_oracle(oracle: EncryptionOracle,
                                          should_stop: Optional[Callable[[], bool]] = None,
                                          random_bytes: Callable[[int], bytes] = token_bytes) -> bytes:
    """
    Recover the bytes that an ECB oracle appends to our input, one byte at a time

    should_stop is checked once per recovered byte. If it returns True the attack is abandoned with AttackCancelled

    >>> flag = "Um9sbGluJyBpbiBteSA1LjAKV2l0aCBteSByYWctdG9wIGRvd24gc28gbXkgaGFpciBjYW4gYmxvdwpUaGUgZ2lybGllcyBvbiBzdGFuZGJ5IHdhdmluZyBqdXN0IHRvIHNheSBoaQpEaWQgeW91IHN0b3A/IE5vLCBJIGp1c3QgZHJvdmUgYnkK"
    >>> flag = base64.b64decode(flag.encode())
    >>> oracle = AppendAndEncryptOracle(suffix=flag)
    >>> leak_suffix_from_appending_ecb_oracle(oracle.encrypt) == flag
    True

    >>> oracle = AppendAndEncryptOracle(suffix=flag, prefix_length_range=(5, 10))
    >>> leak_suffix_from_appending_ecb_oracle(oracle.encrypt) == flag
    True

    >>> oracle = AppendAndEncryptOracle(suffix=flag, prefix_length_range=(40, 60))
    >>> leak_suffix_from_appending_ecb_oracle(oracle.encrypt) == flag
    True

    Exactly 48 bytes come back out, three blocks' worth, with no padding on the end

    >>> suffix = flag[:48]
    >>> suffix[:18]
    b"Rollin' in my 5.0\\n"
    >>> leak_suffix_from_appending_ecb_oracle(AppendAndEncryptOracle(suffix=suffix).encrypt) == suffix
    True

    Every prefix alignment works, and so does an empty suffix

    >>> all(leak_suffix_from_appending_ecb_oracle(AppendAndEncryptOracle(suffix=b"Rollin'", prefix_length_range=(n, n)).encrypt) == b"Rollin'"
    ...     for n in range(34))
    True
    >>> leak_suffix_from_appending_ecb_oracle(AppendAndEncryptOracle(suffix=b"", prefix=b"Q" * 7).encrypt)
    b''

    The marker block doesn't need to be random, and can even share its first byte with the suffix

    >>> oracle = AppendAndEncryptOracle(suffix=b"secret", prefix=b"Q" * 15)
    >>> leak_suffix_from_appending_ecb_oracle(oracle.encrypt, random_bytes=lambda n: b"s" * n)
    b'secret'
    >>> oracle = AppendAndEncryptOracle(suffix=b"Hack the planet", prefix_length_range=(5, 5),
    ...                                 random_bytes=lambda n: bytes(n))
    >>> leak_suffix_from_appending_ecb_oracle(oracle.encrypt, random_bytes=lambda n: bytes(n))
    b'Hack the planet'

    All 256 byte values can be recovered

    >>> every_byte = bytes(range(256))
    >>> leak_suffix_from_appending_ecb_oracle(AppendAndEncryptOracle(suffix=every_byte, prefix=b"Q" * 3).encrypt) == every_byte
    True

    Attacking the same oracle twice gives the same answer

    >>> oracle = AppendAndEncryptOracle(suffix=b"Hack the planet", prefix_length_range=(0, 32))
    >>> leak_suffix_from_appending_ecb_oracle(oracle.encrypt) == leak_suffix_from_appending_ecb_oracle(oracle.encrypt)
    True

    >>> leak_suffix_from_appending_ecb_oracle(AppendAndEncryptOracle(suffix=b"secret", mode=BlockCipherMode.CBC).encrypt)
    Traceback (most recent call last):
    blockutil.DiscoveryFailed: Oracle is not operating in ECB mode

    >>> leak_suffix_from_appending_ecb_oracle(oracle.encrypt, should_stop=lambda: True)
    Traceback (most recent call last):
    blockutil.AttackCancelled: Cancelled after recovering b''

    An oracle that changes its key halfway through can't be attacked

    >>> oracle = AppendAndEncryptOracle(suffix=b"Hack the planet")
    >>> calls = itertools.count()
    >>> def rekeying_oracle(attacker_bytes):
    ...     if next(calls) >= 10:
    ...         oracle.key = token_bytes(16)
    ...     return oracle.encrypt(attacker_bytes)
    >>> leak_suffix_from_appending_ecb_oracle(rekeying_oracle)
    Traceback (most recent call last):
    blockutil.NoMatchingCandidate: No candidate matched byte 0 of the suffix. Got up to b''
    """
    block_size, prefix_length, suffix_length = interrogate_appending_oracle(oracle, random_bytes=random_bytes)

    # Finish off the prefix's last block so that our input starts on a block boundary at offset base
    aligning_chunk = FILLER * (-prefix_length % block_size)
    base = prefix_length + len(aligning_chunk)

    suffix = bytearray()

    for i in range(suffix_length):
        if should_stop is not None and should_stop():
            raise AttackCancelled(f"Cancelled after recovering {bytes(suffix)!r}")

        # Push suffix[i] into the last byte of a block. Everything before it in that block is filler or suffix we
        # already know
        padding = FILLER * (block_size - 1 - i % block_size)
        offset = base + block_size * (i // block_size)
        target_block = oracle(aligning_chunk + padding)[offset:offset + block_size]

        known = (padding + suffix)[-(block_size - 1):]
        candidates = build_candidate_map(oracle, aligning_chunk + known, base, block_size)
        try:
            suffix.append(candidates[target_block])
        except KeyError:
            raise NoMatchingCandidate(f"No candidate matched byte {i} of the suffix. Got up to {bytes(suffix)!r}")
        log.debug("Recovered byte %d of %d: %r", i + 1, suffix_length, bytes(suffix[-1:]))

    return bytes(suffix)


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    flag = "Um9sbGluJyBpbiBteSA1LjAKV2l0aCBteSByYWctdG9wIGRvd24gc28gbXkgaGFpciBjYW4gYmxvdwpUaGUgZ2lybGllcyBvbiBzdGFuZGJ5IHdhdmluZyBqdXN0IHRvIHNheSBoaQpEaWQgeW91IHN0b3A/IE5vLCBJIGp1c3QgZHJvdmUgYnkK"
    flag = base64.b64decode(flag.encode())

    oracle = AppendAndEncryptOracle(suffix=flag, prefix_length_range=(0, 64))
    res = leak_suffix_from_appending_ecb_oracle(oracle.encrypt)
    assert res == flag, "Oops"
    print(res.decode())


if __name__ == "__main__":
    main()
