"""
Shared fixtures and fakes for the validator monitor tests.

FakeDataSource serves canned validator data and records which operations were
called; any operation can be made to fail for batches containing given
validator indexes.
"""

from dataclasses import asdict

import pytest

from data_source import (
    OP_ATTESTATIONS, OP_BLOCKS, OP_CONSOLIDATIONS, OP_INDEX_CONVERSION, OP_SYNC_COMMITTEE,
    OP_VALIDATOR_INFO, DataSource, ValidatorInfo,
)
from monitor_config import MonitorConfig
from monitor_errors import TransportError, UpstreamError
from validator_store import JsonValidatorStore, ValidatorRecord

NETWORK = 'hoodi'
LATEST_EPOCH = 1000
WATERMARK = 990
GWEI = 10 ** 9

ALL_OPERATIONS = (OP_INDEX_CONVERSION, OP_VALIDATOR_INFO, OP_ATTESTATIONS, OP_BLOCKS,
                  OP_SYNC_COMMITTEE, OP_CONSOLIDATIONS)


def pubkey(index):
    return '0x' + format(index, '096x')


class FakeDataSource(DataSource):
    name = 'fake'

    def __init__(self, chunk_size=100):
        super().__init__(NETWORK, {op: chunk_size for op in ALL_OPERATIONS})
        self.head_epoch = LATEST_EPOCH
        self.epoch_error = None
        self.validators = {}
        self.attestations = []
        self.proposals = []
        self.committees = {}
        self.missing_sync = []
        self.consolidations = []
        self.execution_blocks = {}
        self.failing = {}
        self.calls = []

    def _call(self, method, ids=()):
        self.calls.append(method)
        failing = self.failing.get(method, set())
        if any(i in failing for i in ids):
            raise TransportError(f"{method} unavailable")

    def add_validator(self, index, balance=32 * GWEI, status='active_online', slashed=False, exit_epoch=None):
        self.validators[index] = ValidatorInfo(index, pubkey(index), balance, status, slashed, exit_epoch)

    def fetch_epoch(self, epoch='latest'):
        self.calls.append('fetch_epoch')
        if self.epoch_error is not None:
            raise self.epoch_error
        return self.head_epoch

    def fetch_validator_info(self, ids):
        self._call('fetch_validator_info', ids)
        by_pubkey = {info.public_key: info for info in self.validators.values()}
        results = []
        for validator_id in ids:
            if isinstance(validator_id, int):
                info = self.validators.get(validator_id)
            else:
                info = by_pubkey.get(validator_id)
            if info is not None:
                results.append(info)
        return results

    def fetch_attestations(self, ids, since_epoch):
        self._call('fetch_attestations', ids)
        return [a for a in self.attestations if a.validator_index in ids and a.epoch > since_epoch]

    def fetch_blocks(self, ids, watermarks, epoch):
        self._call('fetch_blocks', ids)
        return [p for p in self.proposals if p.validator_index in ids]

    def fetch_sync_committee(self, period):
        self._call('fetch_sync_committee')
        if period not in self.committees:
            raise UpstreamError(f"No {period} sync committee")
        return self.committees[period]

    def fetch_execution_block(self, block_number):
        self._call('fetch_execution_block')
        if block_number not in self.execution_blocks:
            raise UpstreamError(f"Block {block_number} not found")
        return self.execution_blocks[block_number]

    def fetch_missing_sync_committee(self, watermarks, target):
        self._call('fetch_missing_sync_committee', list(watermarks))
        return [row for row in self.missing_sync if row.validator_index in watermarks]

    def fetch_consolidation_events(self, pubkeys, from_epoch):
        self._call('fetch_consolidation_events')
        keys = set(pubkeys)
        return [e for e in self.consolidations
                if (e.source_pubkey in keys or e.target_pubkey in keys) and e.epoch >= from_epoch]


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)
        return event.is_active

    def kinds(self):
        return [event.kind for event in self.events]


def tracked(index, **overrides):
    """A resolved validator record as the store would hold it."""
    values = dict(
        public_key=pubkey(index),
        network=NETWORK,
        validator_index=index,
        balance=32 * GWEI,
        status='active_online',
        slashed=False,
        last_epoch_checked=WATERMARK,
        protocol='lido',
        vc_location='vc-01',
    )
    values.update(overrides)
    return ValidatorRecord(**values)


def seed(store, *records):
    store.data['networks'].setdefault(NETWORK, []).extend(asdict(record) for record in records)
    store.save()


@pytest.fixture
def config(tmp_path):
    return MonitorConfig(
        network=NETWORK,
        explorer_url='https://hoodi.beaconcha.in',
        store_file=str(tmp_path / 'validators.json'),
        notification_delay_seconds=0,
    )


@pytest.fixture
def store(config):
    return JsonValidatorStore(config.store_file)


@pytest.fixture
def data_source():
    return FakeDataSource()


@pytest.fixture
def notifier():
    return RecordingNotifier()
