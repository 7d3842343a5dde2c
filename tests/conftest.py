import pytest
from helpers import RecordingBlobStore, make_orchestrator

from filedrop.kvstore import InMemoryKVStore
from filedrop.quota import QuotaLedger
from filedrop.repository import RecordStore


@pytest.fixture
def kv():
    return InMemoryKVStore()


@pytest.fixture
def blobs():
    return RecordingBlobStore()


@pytest.fixture
def ledger(kv):
    return QuotaLedger(kv, default_max=10)


@pytest.fixture
def records(kv):
    return RecordStore(kv)


@pytest.fixture
def orchestrator(ledger, records, blobs):
    return make_orchestrator(ledger, records, blobs)
