from enum import Enum
from secrets import choice, token_bytes, randbelow
from typing import Any, Callable, Generator, List, Optional
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


class PaddingError(Exception):
    pass


class OracleAttackError(Exception):
    """
    Base class for everything the oracle attacks raise when they can't produce a trustworthy answer
    """
    pass


class DiscoveryFailed(OracleAttackError):
    # Block size or ECB mode couldn't be established
    pass


class ProbeAmbiguous(OracleAttackError):
    pass


class NoMatchingCandidate(OracleAttackError):
    pass


class InvalidPaddingOracle(OracleAttackError):
    pass


class AttackCancelled(OracleAttackError):
    pass


class PaddingValidationFailed(OracleAttackError, PaddingError):
    """
    The padding oracle attack recovered every block, but the result doesn't carry valid PKCS#7 padding. This means
    the ciphertext itself was malformed, not that the oracle misbehaved. The raw recovery is kept in padded_plaintext
    """
    padded_plaintext: bytes

    def __init__(self, message: str, padded_plaintext: bytes):
        super().__init__(message)
        self.padded_plaintext = padded_plaintext


def as_bytes(value: Any) -> bytes:
    """
    Return the bytes behind a message-like value

    >>> as_bytes(b"key")
    b'key'
    >>> as_bytes(bytearray(b"key"))
    b'key'
    >>> as_bytes(memoryview(b"key"))
    b'key'
    >>> as_bytes("ключ")
    b'\\xd0\\xba\\xd0\\xbb\\xd1\\x8e\\xd1\\x87'

    >>> class Token:
    ...     def __bytes__(self):
    ...         return b"token"
    >>> as_bytes(Token())
    b'token'

    >>> as_bytes(1234)
    Traceback (most recent call last):
    TypeError: Can't get bytes from 'int'
    """
    if isinstance(value, bytes):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode()
    if hasattr(value, "__bytes__"):
        return bytes(value)
    raise TypeError(f"Can't get bytes from {type(value).__name__!r}")


def fixed_xor(b1: bytes, b2: bytes) -> bytes:
    """
    Take two bytes arguments of equal length, return their XOR

    >>> arg1 = bytes.fromhex('1c0111001f010100061a024b53535009181c')
    >>> arg2 = bytes.fromhex('686974207468652062756c6c277320657965')
    >>> fixed_xor(arg1, arg2).hex()
    '746865206b696420646f6e277420706c6179'

    >>> fixed_xor(b"AAAA", b"AAA")
    Traceback (most recent call last):
    ValueError: Arguments are of different length
    """
    if len(b1) != len(b2):
        raise ValueError("Arguments are of different length")
    return bytes(a ^ b for a, b in zip(b1, b2))


def chunkify(b: bytes, chunk_size: int) -> Generator[bytes, None, None]:
    """
    Yield chunk_size sized chunks from b

    >>> list(chunkify(b"ABCD", 2))
    [b'AB', b'CD']

    >>> list(chunkify(b"ABCDE", 2))
    [b'AB', b'CD', b'E']
    """
    for i in range(0, len(b), chunk_size):
        yield b[i:i + chunk_size]


def pad_pkcs7(data: bytes, block_size: int) -> bytes:
    """
    >>> pad_pkcs7(b"YELLOW SUBMARINE", 20)
    b'YELLOW SUBMARINE\\x04\\x04\\x04\\x04'
    >>> pad_pkcs7(b"YELLOW SUBMARINE", 16)
    b'YELLOW SUBMARINE\\x10\\x10\\x10\\x10\\x10\\x10\\x10\\x10\\x10\\x10\\x10\\x10\\x10\\x10\\x10\\x10'
    >>> pad_pkcs7(b"", 8)
    b'\\x08\\x08\\x08\\x08\\x08\\x08\\x08\\x08'
    """
    if not 0 < block_size < 256:
        raise ValueError(f"Can't PKCS#7 pad to a block size of {block_size}")
    num_padding_bytes = block_size - len(data) % block_size
    return data + bytes([num_padding_bytes] * num_padding_bytes)


def unpad_pkcs7(data: bytes, block_size: int = 16) -> bytes:
    """
    Strip PKCS#7 padding, raising PaddingError if it's malformed

    >>> unpad_pkcs7(b"ICE ICE BABY\\x04\\x04\\x04\\x04")
    b'ICE ICE BABY'
    >>> unpad_pkcs7(pad_pkcs7(b"Beware of the hazmat", 100), 100)
    b'Beware of the hazmat'
    >>> unpad_pkcs7(b"ICE ICE BABY\\x05\\x05\\x05\\x05")
    Traceback (most recent call last):
    blockutil.PaddingError: Bad padding in b'ICE ICE BABY\\x05\\x05\\x05\\x05'
    >>> unpad_pkcs7(b"ICE ICE BABY\\x01\\x02\\x03\\x04")
    Traceback (most recent call last):
    blockutil.PaddingError: Bad padding in b'ICE ICE BABY\\x01\\x02\\x03\\x04'

    A trailing \\x00 is never valid padding

    >>> unpad_pkcs7(b"ICE ICE BABY\\x00\\x00\\x00\\x00")
    Traceback (most recent call last):
    blockutil.PaddingError: Bad padding in b'ICE ICE BABY\\x00\\x00\\x00\\x00'

    >>> unpad_pkcs7(b"Hello, world!\\x02\\x02")
    Traceback (most recent call last):
    blockutil.PaddingError: Length 15 is not a multiple of the block size 16
    """
    if not data or len(data) % block_size != 0:
        raise PaddingError(f"Length {len(data)} is not a multiple of the block size {block_size}")
    num_padding_bytes = data[-1]
    if not 0 < num_padding_bytes <= block_size:
        raise PaddingError(f"Bad padding in {data!r}")
    if any(b != num_padding_bytes for b in data[-num_padding_bytes:]):
        raise PaddingError(f"Bad padding in {data!r}")
    return data[:-num_padding_bytes]


def _aes_ecb_blocks(data: bytes, key: bytes, decrypt: bool = False) -> bytes:
    cipher = Cipher(algorithms.AES(key), modes.ECB())
    context = cipher.decryptor() if decrypt else cipher.encryptor()
    return context.update(data) + context.finalize()


def aes_ecb_encrypt(plaintext: bytes, key: bytes) -> bytes:
    """
    Encrypt plaintext using AES in ECB mode using the given key (the key length picks AES-128/192/256)

    Automatically pads plaintext using PKCS#7

    >>> plaintext = b"Beware of hazardous materials"
    >>> key = b"YELLOW SUBMARINE"
    >>> aes_ecb_decrypt(aes_ecb_encrypt(plaintext, key), key) == plaintext
    True
    >>> len(aes_ecb_encrypt(b"A" * 16, key))
    32

    >>> aes_ecb_encrypt(b"AAAA", key=b"too short")
    Traceback (most recent call last):
    ValueError: Invalid key size (72) for AES.
    """
    return _aes_ecb_blocks(pad_pkcs7(plaintext, 16), key)


def aes_ecb_decrypt(ciphertext: bytes, key: bytes) -> bytes:
    """
    Decrypt ciphertext using AES in ECB mode using the given key

    Automatically unpads plaintext using PKCS#7

    >>> aes_ecb_decrypt(b"too short", key=bytes(16))
    Traceback (most recent call last):
    ValueError: The length of the provided data is not a multiple of the block length.
    """
    return unpad_pkcs7(_aes_ecb_blocks(ciphertext, key, decrypt=True), 16)


def aes_cbc_encrypt(plaintext: bytes, key: bytes, iv: bytes) -> bytes:
    """
    Encrypt plaintext using AES in CBC mode (the hard way) using the given key

    Automatically pads plaintext using PKCS#7

    >>> key = b"YELLOW SUBMARINE"
    >>> iv = bytes(16)
    >>> plaintext = b"That's a lotta words, too bad I ain't reading em"
    >>> ciphertext = aes_cbc_encrypt(plaintext, key=key, iv=iv)
    >>> aes_cbc_decrypt(ciphertext, key=key, iv=iv) == plaintext
    True

    Identical plaintext blocks don't give identical ciphertext blocks

    >>> chunks = list(chunkify(aes_cbc_encrypt(b"A" * 48, key=key, iv=iv), 16))
    >>> len(set(chunks)) == len(chunks)
    True

    # This actually blows up in fixed_xor before the Cipher gets a chance to complain
    >>> aes_cbc_encrypt(b"AAAA", key=bytes(16), iv=b"too short")
    Traceback (most recent call last):
    ValueError: Arguments are of different length
    """
    cipher = Cipher(algorithms.AES(key), modes.ECB())
    encryptor = cipher.encryptor()

    ciphertext: List[bytes] = []
    prev_block = iv
    for chunk in chunkify(pad_pkcs7(plaintext, 16), chunk_size=16):
        prev_block = encryptor.update(fixed_xor(chunk, prev_block))
        ciphertext.append(prev_block)
    encryptor.finalize()

    return b"".join(ciphertext)


def aes_cbc_decrypt(ciphertext: bytes, key: bytes, iv: bytes, unpad: bool = True) -> bytes:
    """
    Decrypt ciphertext using AES in CBC mode (the hard way) using the given key

    Automatically unpads plaintext using PKCS#7 unless unpad is False

    >>> key = b"YELLOW SUBMARINE"
    >>> ciphertext = aes_cbc_encrypt(b"ICE ICE BABY", key=key, iv=bytes(16))
    >>> aes_cbc_decrypt(ciphertext, key=key, iv=bytes(16), unpad=False)
    b'ICE ICE BABY\\x04\\x04\\x04\\x04'

    >>> aes_cbc_decrypt(b"too short", key=bytes(16), iv=bytes(16))
    Traceback (most recent call last):
    ValueError: The length of the provided data is not a multiple of the block length.

    >>> aes_cbc_decrypt(b"A" * 16, key=b"too short", iv=bytes(16))
    Traceback (most recent call last):
    ValueError: Invalid key size (72) for AES.
    """
    decrypted = _aes_ecb_blocks(ciphertext, key, decrypt=True)

    plaintext: List[bytes] = []
    prev_block = iv
    for chunk, decrypted_chunk in zip(chunkify(ciphertext, 16), chunkify(decrypted, 16)):
        plaintext.append(fixed_xor(decrypted_chunk, prev_block))
        # Prepare to XOR this block into the next decryption operation
        prev_block = chunk

    plaintext_bytes = b"".join(plaintext)
    if unpad:
        return unpad_pkcs7(plaintext_bytes, 16)
    return plaintext_bytes


def identify_ciphertexts_encrypted_with_ecb(ciphertexts: List[bytes], block_size: int) -> List[bytes]:
    """
    Given a list of ciphertexts, return the ciphertexts which were suspected to have been encrypted using
    a block cipher in ECB mode.

    This function assumes that _any_ redundancy on a block basis indicates ECB encryption.

    >>> key = token_bytes(16)
    >>> ecb = aes_ecb_encrypt(b"Z" * 48, key)
    >>> cbc = aes_cbc_encrypt(b"Z" * 48, key, iv=token_bytes(16))
    >>> identify_ciphertexts_encrypted_with_ecb([cbc, ecb], 16) == [ecb]
    True
    """
    sus: List[bytes] = []
    for ciphertext in ciphertexts:
        chunks = list(chunkify(ciphertext, block_size))
        if len(set(chunks)) < len(chunks):
            sus.append(ciphertext)
    return sus


class BlockCipherMode(Enum):
    ECB = 0
    CBC = 1


class RandomModeOracle:
    """
    An oracle that picks ECB or CBC mode (50/50 split) when it's built and then encrypts data using AES-128 in that
    mode using a fresh random key (and random IV in the case of CBC mode) on each call, bookending the plaintext with
    5-10 random bytes
    """
    mode: BlockCipherMode
    random_bytes: Callable[[int], bytes]

    def __init__(self, mode: Optional[BlockCipherMode] = None, random_bytes: Callable[[int], bytes] = token_bytes):
        if mode is None:
            mode = choice((BlockCipherMode.ECB, BlockCipherMode.CBC))
        self.mode = mode
        self.random_bytes = random_bytes

    def encrypt(self, plaintext: Any) -> bytes:
        key = self.random_bytes(16)

        # Bookend plaintext with 5-10 random bytes
        plaintext = self.random_bytes(randbelow(6) + 5) + as_bytes(plaintext) + self.random_bytes(randbelow(6) + 5)

        if self.mode is BlockCipherMode.ECB:
            return aes_ecb_encrypt(plaintext, key=key)
        else:
            assert self.mode is BlockCipherMode.CBC, "What the hell happened here?"
            return aes_cbc_encrypt(plaintext, key=key, iv=self.random_bytes(16))


def determine_oracle_ecb_vs_cbc(oracle: Callable[[bytes], bytes], block_size: int = 16) -> BlockCipherMode:
    """
    Determines if the callable oracle is encrypting using ECB or CBC

    Accounts for the fact that the oracle may be prepending a random number of random bytes

    >>> oracle = RandomModeOracle()
    >>> determine_oracle_ecb_vs_cbc(oracle.encrypt) is oracle.mode
    True
    >>> all(determine_oracle_ecb_vs_cbc(RandomModeOracle(mode).encrypt) is mode
    ...     for mode in BlockCipherMode for _ in range(10))
    True
    """
    # Four blocks so that at least two of them end up aligned whatever gets prepended
    ciphertext = oracle(b"A" * block_size * 4)
    if identify_ciphertexts_encrypted_with_ecb([ciphertext], block_size=block_size):
        return BlockCipherMode.ECB
    return BlockCipherMode.CBC
