"""
Tests for the BIP-32 derivation engine
"""
import hashlib
import hmac
from concurrent.futures import ThreadPoolExecutor
from secrets import token_bytes

import pytest

from tests.utility import reference_derive, reference_step, TV1_SEED
from tronhd import (
    BIP32, Crypto, DerivationPath, DerivationScratch, HARDENED, SECP256K1_N,
    InvalidBufferSizeError, InvalidChildError, InvalidPathError, InvalidSeedError,
)

# (path, private key, chain code, compressed public key) -- BIP-32 test vector 1
TV1_CHAIN = [
    ("m/0'",
     "edb2e14f9ee77d26dd93b4ecede8d16ed408ce149b6cd80b0715a2d911a0afea",
     "47fdacbd0f1097043b78c63c20c34ef4ed9a111d980047ad16282c7ae6236141",
     "035a784662a4a20a65bf6aab9ae98a6c068a81c52e4b032c0fb5400c706cfccc56"),
    ("m/0'/1",
     "3c6cb8d0f6a264c91ea8b5030fadaa8e538b020f0a387421a12de9319dc93368",
     "2a7857631386ba23dacac34180dd1983734e444fdbf774041578e9b6adb37c19",
     "03501e454bf00751f24b1b489aa925215d66af2234e3891c3b21a52bedb3cd711c"),
    ("m/0'/1/2'",
     "cbce0d719ecf7431d88e6a89fa1483e02e35092af60c042b1df2ff59fa424dca",
     "04466b9cc8e161e966409ca52986c584f07e9dc81f735db683c3ff6ec7b1503f",
     "0357bfe1e341d01c69fe5654309956cbea516822fba8a601743a012a7896ee8dc2"),
    ("m/0'/1/2'/2",
     "0f479245fb19a38a1954c5c7c0ebab2f9bdfd96a17563ef28a6a4b1a2a764ef4",
     "cfb71883f01676f587d023cc53a35bc7f88f724b1f8c2892ac1275ac822a3edd",
     "02e8445082a72f29b75ca48748a914df60622a609cacfce8ed0e35804560741d29"),
    ("m/0'/1/2'/2/1000000000",
     "471b76e389e528d6de6d816857e012c5455051cad6660850e58372a6c3e6e7c8",
     "c783e67b921d2beb8f6b389cc646d7263b4145701dadd2161548a8b078e65e9e",
     "022a471424da5e657499d1ff51cb43c47481a03b1e77f951fe64cec9f5a48f7011"),
]


def test_master_key(tv1_seed):
    key = bytearray(32)
    with DerivationScratch() as scratch:
        BIP32.master_key(tv1_seed, key, scratch)
        assert key.hex() == "e8f32e723decf4051aefac8e2c93c9c5b214313817cdb01a1494b917c8436b35"
        assert scratch.chain_code.hex() == "873dff81c02f525623fd1fe5167eac3a55a049de3d314bb42ee227ffed37d508"


@pytest.mark.parametrize("path, priv, chain, pub", TV1_CHAIN)
def test_bip32_vector_1(tv1_seed, path, priv, chain, pub):
    key = bytearray(32)
    scratch = DerivationScratch()
    BIP32.derive(tv1_seed, path, key, scratch)
    assert key.hex() == priv, f"Private key mismatch at {path}"
    assert scratch.chain_code.hex() == chain, f"Chain code mismatch at {path}"
    assert Crypto.pubkey(key).hex() == pub, f"Public key mismatch at {path}"


def test_matches_integer_reference():
    for _ in range(5):
        seed = token_bytes(64)
        path = DerivationPath.parse("m/44'/195'/3'/1/9")
        key = bytearray(32)
        scratch = DerivationScratch()
        BIP32.derive(seed, path, key, scratch)
        ref_key, ref_chain = reference_derive(seed, [c.value for c in path])
        assert bytes(key) == ref_key
        assert bytes(scratch.chain_code) == ref_chain


def test_determinism_and_range():
    seed = token_bytes(32)
    first, second = bytearray(32), bytearray(32)
    BIP32.derive(seed, "m/44'/195'/0'/0/0", first)
    BIP32.derive(seed, "m/44'/195'/0'/0/0", second)
    assert first == second, "Same seed and path must give the same key"
    assert 1 <= int.from_bytes(first, "big") < SECP256K1_N


def test_own_scratch_is_wiped(monkeypatch):
    seen = []
    real_exit = DerivationScratch.__exit__

    def spy_exit(self, *args):
        real_exit(self, *args)
        seen.append(self)

    monkeypatch.setattr(DerivationScratch, "__exit__", spy_exit)
    BIP32.derive(TV1_SEED, "m/0'", bytearray(32))
    assert len(seen) == 1
    scratch = seen[0]
    for buf in (scratch.hmac_output, scratch.derivation_data, scratch.chain_code, scratch.backup):
        assert not any(buf), "Internal scratch buffer should be zeroed after derivation"


def test_hardened_needs_private_key(tv1_seed):
    """Building the hardened input from the public key gives a different child."""
    parent = bytearray(32)
    scratch = DerivationScratch()
    BIP32.master_key(tv1_seed, parent, scratch)
    chain = bytes(scratch.chain_code)
    index = HARDENED

    child = bytearray(parent)
    assert BIP32.ckd_priv(child, scratch, index)

    pub_only = Crypto.pubkey(parent) + index.to_bytes(4, "big")
    I = hmac.new(chain, pub_only, hashlib.sha512).digest()
    forged = (int.from_bytes(parent, "big") + int.from_bytes(I[:32], "big")) % SECP256K1_N
    assert forged.to_bytes(32, "big") != bytes(child)

    with pytest.raises(InvalidChildError):
        BIP32.ckd_pub(Crypto.pubkey(parent), chain, index)


def test_ckd_pub_matches_private_derivation(tv1_seed):
    parent = bytearray(32)
    scratch = DerivationScratch()
    BIP32.derive(tv1_seed, "m/0'", parent, scratch)
    parent_chain = bytes(scratch.chain_code)

    for index in (0, 1, 7, 2 ** 31 - 1):
        child = bytearray(parent)
        scratch.chain_code[:] = parent_chain
        assert BIP32.ckd_priv(child, scratch, index)
        pubc, chain = BIP32.ckd_pub(Crypto.pubkey(parent), parent_chain, index)
        assert pubc == Crypto.pubkey(child)
        assert chain == bytes(scratch.chain_code)


def test_skip_when_il_not_below_order(monkeypatch, tv1_seed):
    key = bytearray(32)
    scratch = DerivationScratch()
    BIP32.master_key(tv1_seed, key, scratch)
    key_before, chain_before = bytes(key), bytes(scratch.chain_code)

    monkeypatch.setattr(Crypto, "hmac_sha512", staticmethod(lambda k, d: b"\xff" * 64))
    assert not BIP32.ckd_priv(key, scratch, HARDENED + 1)
    assert bytes(key) == key_before
    assert bytes(scratch.chain_code) == chain_before


def test_skip_when_il_equals_order(monkeypatch, tv1_seed):
    key = bytearray(32)
    scratch = DerivationScratch()
    BIP32.master_key(tv1_seed, key, scratch)
    key_before, chain_before = bytes(key), bytes(scratch.chain_code)

    il = SECP256K1_N.to_bytes(32, "big")
    monkeypatch.setattr(Crypto, "hmac_sha512", staticmethod(lambda k, d: il + b"\x01" * 32))
    assert not BIP32.ckd_priv(key, scratch, 3)
    assert bytes(key) == key_before
    assert bytes(scratch.chain_code) == chain_before


def test_skip_when_child_is_zero(monkeypatch, tv1_seed):
    key = bytearray(32)
    scratch = DerivationScratch()
    BIP32.master_key(tv1_seed, key, scratch)
    key_before, chain_before = bytes(key), bytes(scratch.chain_code)

    # IL = n - k makes k + IL == n, which reduces to zero
    il = (SECP256K1_N - int.from_bytes(key, "big")).to_bytes(32, "big")
    monkeypatch.setattr(Crypto, "hmac_sha512", staticmethod(lambda k, d: il + b"\x02" * 32))
    assert not BIP32.ckd_priv(key, scratch, HARDENED)
    assert bytes(key) == key_before, "Zero child must leave the parent key in place"
    assert bytes(scratch.chain_code) == chain_before


def test_overflow_is_reduced(monkeypatch):
    key = bytearray((SECP256K1_N - 1).to_bytes(32, "big"))
    scratch = DerivationScratch()
    ir = b"\x03" * 32
    il = (SECP256K1_N - 1).to_bytes(32, "big")
    monkeypatch.setattr(Crypto, "hmac_sha512", staticmethod(lambda k, d: il + ir))
    assert BIP32.ckd_priv(key, scratch, HARDENED)
    assert int.from_bytes(key, "big") == SECP256K1_N - 2
    assert bytes(scratch.chain_code) == ir


def test_skipped_component_matches_reference(monkeypatch, tv1_seed):
    """A skipped step in the middle of a path is a no-op for the following steps.
    HMAC calls: master, 0', 5' (forced invalid), 1."""
    real = Crypto.hmac_sha512
    calls = []

    def flaky(key, data):
        calls.append(1)
        return b"\xff" * 64 if len(calls) == 3 else real(key, data)

    monkeypatch.setattr(Crypto, "hmac_sha512", staticmethod(flaky))
    key = bytearray(32)
    BIP32.derive(tv1_seed, "m/0'/5'/1", key)

    expected, _ = reference_derive(tv1_seed, [HARDENED, 1])
    assert bytes(key) == expected


def test_hardened_input_layout(tv1_seed):
    key = bytearray(32)
    scratch = DerivationScratch()
    BIP32.master_key(tv1_seed, key, scratch)
    parent = bytes(key)
    BIP32.ckd_priv(key, scratch, HARDENED + 44)
    data = scratch.derivation_data
    assert data[0] == 0
    assert bytes(data[1:33]) == parent
    assert bytes(data[33:]) == (HARDENED + 44).to_bytes(4, "big")


def test_reference_step_agrees_with_ckd_priv(tv1_seed):
    key = bytearray(32)
    scratch = DerivationScratch()
    BIP32.master_key(tv1_seed, key, scratch)
    k, c = int.from_bytes(key, "big"), bytes(scratch.chain_code)
    for index in (HARDENED + 44, HARDENED + 195, 0, 12):
        BIP32.ckd_priv(key, scratch, index)
        k, c = reference_step(k, c, index)
        assert int.from_bytes(key, "big") == k
        assert bytes(scratch.chain_code) == c


# --- Input validation --- #

@pytest.mark.parametrize("seed", [b"", bytearray(), "000102", None, 12])
def test_invalid_seed(seed):
    with pytest.raises(InvalidSeedError):
        BIP32.derive(seed, "m/0'", bytearray(32))


@pytest.mark.parametrize("key", [bytearray(31), bytearray(33), bytes(32), None])
def test_invalid_key_buffer(key):
    with pytest.raises(InvalidBufferSizeError):
        BIP32.derive(TV1_SEED, "m/0'", key)


@pytest.mark.parametrize("kwargs", [
    {"hmac_output": bytearray(63)},
    {"derivation_data": bytearray(36)},
    {"chain_code": bytearray(64)},
    {"backup": bytes(32)},
])
def test_invalid_scratch_buffer(kwargs):
    with pytest.raises(InvalidBufferSizeError):
        DerivationScratch(**kwargs)


def test_errors_raised_before_any_hashing(monkeypatch):
    def boom(*args):
        raise AssertionError("HMAC must not run on invalid input")

    monkeypatch.setattr(Crypto, "hmac_sha512", staticmethod(boom))
    with pytest.raises(InvalidPathError):
        BIP32.derive(TV1_SEED, "m/0x", bytearray(32))
    with pytest.raises(InvalidBufferSizeError):
        BIP32.derive(TV1_SEED, "m/0'", bytearray(16))
    with pytest.raises(InvalidSeedError):
        BIP32.derive(b"", "m/0'", bytearray(32))


def test_caller_scratch_is_reused():
    scratch = DerivationScratch()
    a, b = bytearray(32), bytearray(32)
    BIP32.derive(TV1_SEED, "m/0'/1", a, scratch)
    BIP32.derive(TV1_SEED, "m/0'/1", b, scratch)
    assert a == b
    scratch.wipe()
    assert not any(scratch.hmac_output) and not any(scratch.chain_code)


def test_concurrent_derivations_with_own_scratch():
    seed = token_bytes(64)
    paths = [f"m/44'/195'/{i}'/0/{j}" for i in range(4) for j in range(4)]

    def derive(path):
        key, scratch = bytearray(32), DerivationScratch()
        BIP32.derive(seed, path, key, scratch)
        return bytes(key), bytes(scratch.chain_code)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(derive, paths))

    for path, (key, chain) in zip(paths, results):
        ref_key, ref_chain = reference_derive(seed, [c.value for c in DerivationPath.parse(path)])
        assert key == ref_key, f"Private key mismatch at {path}"
        assert chain == ref_chain, f"Chain code mismatch at {path}"
    assert len({key for key, _ in results}) == len(paths)
