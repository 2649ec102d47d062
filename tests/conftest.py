"""
Fixtures used in the tests
"""
import pytest
from mnemonic import Mnemonic

from tests.utility import TV1_SEED, FIXED_PHRASE
from tronwallet import WalletAccountTron


@pytest.fixture()
def tv1_seed():
    return TV1_SEED


@pytest.fixture(scope="session")
def fixed_seed():
    # same as bip39 mnemonicToSeedSync: PBKDF2 only, no checksum validation
    return Mnemonic.to_seed(FIXED_PHRASE)


@pytest.fixture()
def account(fixed_seed):
    acct = WalletAccountTron(fixed_seed, "0'/0'")
    yield acct
    acct.close()
