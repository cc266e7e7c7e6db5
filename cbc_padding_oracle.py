#!/usr/bin/env python3
import base64
import itertools
import logging
from secrets import choice, token_bytes
from typing import Any, Callable, List, Optional, Tuple
from blockutil import (aes_cbc_decrypt, aes_cbc_encrypt, as_bytes, chunkify, fixed_xor, pad_pkcs7, unpad_pkcs7,
                       AttackCancelled, InvalidPaddingOracle, PaddingError, PaddingValidationFailed)

"""
The CBC padding oracle

Given a ciphertext, its IV, and a function that says whether or not some (ciphertext, IV) pair decrypts to
correctly padded plaintext, recover the plaintext.

For every ciphertext block, forge the block that gets XORed into it. Brute force the last forged byte until the
padding is valid. The decrypted byte is then \\x01, and the forged byte XOR \\x01 is the "intermediate" byte that
AES decryption produced before the XOR. Set up the tail to decrypt to \\x02 and go for the next byte along, and so
on. XORing the intermediate block with the real previous ciphertext block (or the IV) gives the plaintext.

The fundamental insight behind this attack is that the byte 01h is valid padding, and occur in 1/256 trials of
"randomized" plaintexts produced by decrypting a tampered ciphertext.

02h in isolation is not valid padding.

02h 02h is valid padding, but is much less likely to occur randomly than 01h.
"""


BLOCK_SIZE = 16

log = logging.getLogger(__name__)

# Takes a ciphertext and an IV, returns True if the plaintext has good padding
PaddingOracle = Callable[[bytes, bytes], bool]

CHALLENGE_LINES = [
    "MDAwMDAwTm93IHRoYXQgdGhlIHBhcnR5IGlzIGp1bXBpbmc=",
    "MDAwMDAxV2l0aCB0aGUgYmFzcyBraWNrZWQgaW4gYW5kIHRoZSBWZWdhJ3MgYXJlIHB1bXBpbic=",
    "MDAwMDAyUXVpY2sgdG8gdGhlIHBvaW50LCB0byB0aGUgcG9pbnQsIG5vIGZha2luZw==",
    "MDAwMDAzQ29va2luZyBNQydzIGxpa2UgYSBwb3VuZCBvZiBiYWNvbg==",
    "MDAwMDA0QnVybmluZyAnZW0sIGlmIHlvdSBhaW4ndCBxdWljayBhbmQgbmltYmxl",
    "MDAwMDA1SSBnbyBjcmF6eSB3aGVuIEkgaGVhciBhIGN5bWJhbA==",
    "MDAwMDA2QW5kIGEgaGlnaCBoYXQgd2l0aCBhIHNvdXBlZCB1cCB0ZW1wbw==",
    "MDAwMDA3SSdtIG9uIGEgcm9sbCwgaXQncyB0aW1lIHRvIGdvIHNvbG8=",
    "MDAwMDA4b2xsaW4nIGluIG15IGZpdmUgcG9pbnQgb2g=",
    "MDAwMDA5aXRoIG15IHJhZy10b3AgZG93biBzbyBteSBoYWlyIGNhbiBibG93",
]


class CbcPaddingOracle:
    key: bytes
    random_bytes: Callable[[int], bytes]
    verbose: bool

    def __init__(self,
                 key: Optional[bytes] = None,
                 random_bytes: Callable[[int], bytes] = token_bytes,
                 verbose: bool = False):
        self.random_bytes = random_bytes
        self.key = key if key is not None else random_bytes(BLOCK_SIZE)
        self.verbose = verbose

    def encrypt(self, plaintext: Any) -> Tuple[bytes, bytes]:
        """
        Encrypt plaintext under the oracle's key with a fresh IV, return (iv, ciphertext)
        """
        iv = self.random_bytes(BLOCK_SIZE)
        ct = aes_cbc_encrypt(plaintext=as_bytes(plaintext),
                             key=self.key,
                             iv=iv)
        return iv, ct

    def encrypt_random_line(self) -> Tuple[bytes, bytes]:
        """
        >>> oracle = CbcPaddingOracle()
        >>> iv, ct = oracle.encrypt_random_line()
        >>> aes_cbc_decrypt(ct, key=oracle.key, iv=iv)[:5]
        b'00000'
        """
        return self.encrypt(base64.b64decode(choice(CHALLENGE_LINES)))

    def is_valid_padding(self, ciphertext: bytes, iv: bytes) -> bool:
        """
        >>> oracle = CbcPaddingOracle(key=b"YELLOW SUBMARINE")
        >>> iv, ct = oracle.encrypt(b"ICE ICE BABY")
        >>> oracle.is_valid_padding(ct, iv)
        True
        >>> oracle.is_valid_padding(ct, fixed_xor(iv, bytes(15) + b"\\x01"))
        False
        """
        try:
            aes_cbc_decrypt(ciphertext=ciphertext,
                            key=self.key,
                            iv=iv)
        except PaddingError:
            valid = False
        else:
            valid = True
        if self.verbose:
            print(f"{iv[:5]!r}... {ciphertext[:5]!r}... --> {valid}")
        return valid


def attack_block(oracle: PaddingOracle,
                 block: bytes,
                 should_stop: Optional[Callable[[], bool]] = None) -> bytes:
    """
    Recover the intermediate state that a block of CBC ciphertext decrypts to before it gets XORed with the previous
    block. That is, the IV that makes this block decrypt to all zeroes

    >>> key = b"YELLOW SUBMARINE"
    >>> oracle = CbcPaddingOracle(key=key)
    >>> block = oracle.encrypt(b"Hack the planet")[1]
    >>> attack_block(oracle.is_valid_padding, block) == aes_cbc_decrypt(block, key=key, iv=bytes(16), unpad=False)
    True
    """
    block_size = len(block)
    intermediate = bytearray(block_size)

    for i in reversed(range(block_size)):
        if should_stop is not None and should_stop():
            raise AttackCancelled(f"Cancelled at byte {i} of block {block!r}")

        # Make everything after position i decrypt to the padding value we're looking for
        padding_value = block_size - i
        forged = bytearray(block_size)
        for k in range(i + 1, block_size):
            forged[k] = intermediate[k] ^ padding_value

        spikes: List[int] = []
        for j in range(256):
            forged[i] = j
            if oracle(block, bytes(forged)):
                spikes.append(j)

        if len(spikes) == 2 and padding_value == 1 and i > 0:
            # Hit the quirky case where the byte before the last one decrypts to \x02 (or the two before it to
            # \x03\x03, or ...) so that one of the spikes is really longer padding. Change the byte before and keep
            # whichever spike still has good padding, which is the one that gave \x01
            confirmed: List[int] = []
            for j in spikes:
                forged[i] = j
                forged[i - 1] ^= 1
                if oracle(block, bytes(forged)):
                    confirmed.append(j)
                forged[i - 1] ^= 1
            spikes = confirmed

        if len(spikes) != 1:
            raise InvalidPaddingOracle(f"Expected exactly one value with good padding at byte {i} of block "
                                       f"{block!r}, got {len(spikes)}")

        intermediate[i] = spikes[0] ^ padding_value
        log.debug("Intermediate byte %d: %#04x", i, intermediate[i])

    return bytes(intermediate)


def leak_pt_from_padding_oracle(oracle: PaddingOracle,
                                ciphertext: bytes,
                                iv: bytes,
                                should_stop: Optional[Callable[[], bool]] = None) -> bytes:
    """
    @param oracle: A function which takes a ciphertext and an IV and returns True if the PKCS#7 padding was correct,
                   else False
    @param ciphertext: The ciphertext to decrypt
    @param iv: The ciphertext's IV. Its length is taken to be the block size
    @param should_stop: (Optional) checked once per byte. If it returns True the attack stops with AttackCancelled
    @return: The plaintext corresponding to IV and ciphertext, with its padding removed

    Raises InvalidPaddingOracle if the oracle doesn't behave like a CBC padding check, and PaddingValidationFailed
    if the oracle is fine but the recovered plaintext isn't padded properly (i.e. the ciphertext was bad)

    >>> flag = b"Hack the planet"
    >>> oracle = CbcPaddingOracle()
    >>> iv, ct = oracle.encrypt(flag)
    >>> leak_pt_from_padding_oracle(oracle=oracle.is_valid_padding, ciphertext=ct, iv=iv) == flag
    True

    >>> oracle = CbcPaddingOracle(key=b"YELLOW SUBMARINE")
    >>> iv, ct = oracle.encrypt(b"ICE ICE BABY")
    >>> leak_pt_from_padding_oracle(oracle.is_valid_padding, ct, iv)
    b'ICE ICE BABY'

    >>> iv, ct = oracle.encrypt(b"")
    >>> leak_pt_from_padding_oracle(oracle.is_valid_padding, ct, iv)
    b''

    >>> lines = [base64.b64decode(line) for line in CHALLENGE_LINES]
    >>> all(leak_pt_from_padding_oracle(oracle.is_valid_padding, *oracle.encrypt(line)[::-1]) == line
    ...     for line in lines)
    True

    The last byte of a block can come up valid twice when the byte before it decrypts to \\x02. Build a block like
    that and make sure the right one wins

    >>> intermediate_of = lambda block: aes_cbc_decrypt(block, key=oracle.key, iv=bytes(16), unpad=False)
    >>> block = next(b for b in (token_bytes(16) for _ in itertools.count()) if intermediate_of(b)[14] == 2)
    >>> iv = fixed_xor(intermediate_of(block), pad_pkcs7(b"quirky", 16))
    >>> leak_pt_from_padding_oracle(oracle.is_valid_padding, block, iv)
    b'quirky'

    A ciphertext that doesn't decrypt to padded plaintext is recovered, but reported

    >>> iv, ct = oracle.encrypt(b"A" * 20)
    >>> try:
    ...     leak_pt_from_padding_oracle(oracle.is_valid_padding, ct[:16], iv)
    ... except PaddingValidationFailed as e:
    ...     e.padded_plaintext
    b'AAAAAAAAAAAAAAAA'

    An oracle that says yes to everything is caught on the first byte

    >>> probes = []
    >>> def gullible_oracle(ciphertext, iv):
    ...     probes.append(iv)
    ...     return True
    >>> leak_pt_from_padding_oracle(gullible_oracle, ct, iv)
    Traceback (most recent call last):
    blockutil.InvalidPaddingOracle: Expected exactly one value with good padding at byte 15 of block ..., got 256
    >>> len(probes)
    256

    >>> leak_pt_from_padding_oracle(lambda ciphertext, iv: False, ct, iv)
    Traceback (most recent call last):
    blockutil.InvalidPaddingOracle: Expected exactly one value with good padding at byte 15 of block ..., got 0

    >>> leak_pt_from_padding_oracle(oracle.is_valid_padding, ct[:-1], iv)
    Traceback (most recent call last):
    ValueError: Ciphertext length 31 is not a non-zero multiple of the block size 16

    >>> leak_pt_from_padding_oracle(oracle.is_valid_padding, ct, iv, should_stop=lambda: True)
    Traceback (most recent call last):
    blockutil.AttackCancelled: Cancelled at byte 15 of block ...
    """
    block_size = len(iv)
    if not ciphertext or len(ciphertext) % block_size != 0:
        raise ValueError(f"Ciphertext length {len(ciphertext)} is not a non-zero multiple of the block size "
                         f"{block_size}")

    ct_chunks = list(chunkify(ciphertext, block_size))
    prev_chunks = [iv, *ct_chunks[:-1]]
    pt: List[bytes] = [b""] * len(ct_chunks)

    # Last block first
    for n in reversed(range(len(ct_chunks))):
        intermediate = attack_block(oracle, ct_chunks[n], should_stop=should_stop)
        pt[n] = fixed_xor(prev_chunks[n], intermediate)
        log.info("Recovered block %d of %d: %r", n + 1, len(ct_chunks), pt[n])

    padded_pt = b"".join(pt)
    try:
        return unpad_pkcs7(padded_pt, block_size)
    except PaddingError as e:
        raise PaddingValidationFailed(f"Recovered plaintext has bad padding: {e}", padded_plaintext=padded_pt) from e


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    oracle = CbcPaddingOracle()
    iv, ct = oracle.encrypt_random_line()

    pt = leak_pt_from_padding_oracle(oracle=oracle.is_valid_padding, ciphertext=ct, iv=iv)

    print(pt)


if __name__ == "__main__":
    main()
