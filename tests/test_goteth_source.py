import json
from unittest.mock import MagicMock

import pytest
import requests

from data_source import OP_BLOCKS, PROPOSAL_MISSED, PROPOSAL_ORPHANED, PROPOSAL_PROPOSED
from goteth_source import ClickHouseHTTPClient, GotethDataSource
from monitor_config import MonitorConfig
from monitor_errors import TransportError, UpstreamError

PUBKEY = '0x' + 'cd' * 48


class FakeClickHouse:
    """Returns scripted rows for each query in order and keeps the queries."""

    def __init__(self, *results):
        self.results = list(results)
        self.queries = []

    def execute_query(self, query):
        self.queries.append(query)
        result = self.results.pop(0)
        if isinstance(result, dict):
            return result
        return {'status': 'OK', 'data': result}


def make_source(*results, **config_overrides):
    config = MonitorConfig(network='hoodi', data_source='goteth', **config_overrides)
    client = FakeClickHouse(*results)
    return GotethDataSource(config, client=client), client


def test_capabilities():
    source, _ = make_source()

    assert source.supports_missing_sync_committee
    assert source.supports_consolidations
    assert not source.supports_sync_committee
    assert source.unfinalized_epoch_lag == 0
    assert source.chunk_size(OP_BLOCKS) == 5000


def test_validator_info_converts_eth_to_gwei():
    source, client = make_source([{
        'validatorindex': '12', 'pubkey': PUBKEY, 'balance': '32.000123456', 'status_number': '1',
        'slashed': 'false', 'exit_epoch': '18446744073709551615', 'status': 'active',
    }])

    info = source.fetch_validator_info([12])[0]

    assert info.balance == 32000123456
    assert info.status == 'active'
    assert info.slashed is False
    assert 'tvls.f_val_idx IN (12)' in client.queries[0]


def test_validator_info_by_pubkey_falls_back_to_status_number():
    source, client = make_source([{
        'validatorindex': 12, 'pubkey': PUBKEY, 'balance': 0, 'status_number': 0, 'slashed': 0,
        'exit_epoch': None, 'status': None,
    }])

    info = source.fetch_validator_info([PUBKEY])[0]

    assert info.status == '0'
    assert f"'{PUBKEY}'" in client.queries[0]


def test_malformed_pubkeys_never_reach_the_query():
    source, client = make_source()

    assert source.fetch_validator_info(["0x1234'; DROP TABLE t_status; --"]) == []
    assert client.queries == []


def test_attestation_missed_only_when_all_parts_missing():
    source, _ = make_source([
        {'validatorindex': 1, 'epoch': 10, 'f_missing_source': 1, 'f_missing_target': 1, 'f_missing_head': 1},
        {'validatorindex': 1, 'epoch': 11, 'f_missing_source': 0, 'f_missing_target': 0, 'f_missing_head': 1},
    ])

    outcomes = source.fetch_attestations([1], since_epoch=9)

    assert [o.successful for o in outcomes] == [False, True]


def test_blocks_without_execution_block_are_read_from_orphans():
    source, client = make_source(
        [
            {'status': '1', 'proposer': 1, 'slot': 320, 'epoch': 10, 'exec_block_number': 500,
             'exec_transactions_count': 20},
            {'status': '1', 'proposer': 1, 'slot': 330, 'epoch': 10, 'exec_block_number': 0},
            {'status': '0', 'proposer': 2, 'slot': 340, 'epoch': 10, 'exec_block_number': None},
        ],
        [
            {'status': '2', 'proposer': 1, 'slot': 330, 'epoch': 10, 'exec_block_number': 501},
        ],
    )

    proposals = source.fetch_blocks([1, 2], {1: 5, 2: 7}, epoch=12)

    assert [p.outcome for p in proposals] == [PROPOSAL_PROPOSED, PROPOSAL_ORPHANED, PROPOSAL_MISSED]
    assert proposals[1].exec_block_number == 501
    assert '(bm.f_proposer_index = 1 AND bm.f_epoch > 5)' in client.queries[0]
    assert 't_orphans' in client.queries[1]


def test_latest_epoch_from_finalized_checkpoint():
    source, client = make_source([{'epoch': '4321'}])

    assert source.fetch_epoch('latest') == 4321
    assert 't_finalized_checkpoint' in client.queries[0]


def test_empty_checkpoint_is_upstream_error():
    source, _ = make_source([{'epoch': None}])

    with pytest.raises(UpstreamError):
        source.fetch_epoch()


def test_missing_execution_block_is_upstream_error():
    source, _ = make_source([])

    with pytest.raises(UpstreamError):
        source.fetch_execution_block(1)


def test_http_error_envelope_is_upstream_error():
    source, _ = make_source({'status': 'HTTP 500', 'error': 'Code: 60. Table does not exist'})

    with pytest.raises(UpstreamError) as excinfo:
        source.fetch_epoch()

    assert excinfo.value.envelope['error'].startswith('Code: 60')


def test_missing_sync_committee():
    source, client = make_source([{'validator_index': 3, 'epoch': 100, 'participations': 12}])

    rows = source.fetch_missing_sync_committee({3: 90}, target=30)

    assert (rows[0].validator_index, rows[0].epoch, rows[0].participations) == (3, 100, 12)
    assert 'f_sync_committee_participations_included < 30' in client.queries[0]


def test_consolidation_events_use_slots_per_epoch():
    target = '0x' + 'ef' * 48
    source, client = make_source(
        [{'slot': 1600, 'source_address': '0xabc', 'source_pubkey': PUBKEY, 'target_pubkey': target,
          'result': 1}],
        slots_per_epoch=16,
    )

    events = source.fetch_consolidation_events([PUBKEY], from_epoch=50)

    assert events[0].epoch == 100
    assert events[0].result == '1'
    assert 'f_slot >= 800' in client.queries[0]


@pytest.mark.parametrize('call, rows', [
    (lambda s: s.fetch_validator_info([12]), [{'pubkey': PUBKEY, 'balance': '32.0', 'status': 'active'}]),
    (lambda s: s.fetch_validator_info([12]), [{'validatorindex': '12', 'pubkey': PUBKEY, 'balance': 'n/a'}]),
    (lambda s: s.fetch_attestations([12], 0), [{'validatorindex': '12', 'f_missing_source': 1}]),
    (lambda s: s.fetch_blocks([12], {12: 0}, 100), [{'status': '1', 'epoch': '10', 'slot': '320',
                                                      'exec_block_number': '55'}]),
    (lambda s: s.fetch_blocks([12], {12: 0}, 100), [{'status': '1', 'slot': '320', 'exec_block_number': '0'}]),
    (lambda s: s.fetch_epoch(), [{'epoch': 'latest'}]),
    (lambda s: s.fetch_execution_block(55), [{'producer_reward': '1'}]),
    (lambda s: s.fetch_missing_sync_committee({3: 90}, 30), [{'validator_index': 3, 'epoch': 100}]),
    (lambda s: s.fetch_consolidation_events([PUBKEY], 0), [{'slot': 'x', 'source_pubkey': PUBKEY}]),
])
def test_malformed_row_is_transport_error(call, rows):
    source, _ = make_source(rows)

    with pytest.raises(TransportError, match='Malformed'):
        call(source)


class TestClickHouseHTTPClient:
    def make_client(self, response=None, error=None):
        session = MagicMock()
        session.headers = {}
        if error is not None:
            session.post.side_effect = error
        else:
            session.post.return_value = response
        return ClickHouseHTTPClient(host='ch', port=8443, database='goteth', user='reader', password='pw',
                                    use_ssl=True, session=session), session

    def test_rows_parsed_from_json_each_row(self):
        response = MagicMock(status_code=200, text=json.dumps({'a': 1}) + '\n' + json.dumps({'a': 2}) + '\n')
        client, session = self.make_client(response)

        result = client.execute_query('SELECT a FROM t')

        assert result == {'status': 'OK', 'data': [{'a': 1}, {'a': 2}]}
        assert session.post.call_args.args[0] == 'https://ch:8443/'
        assert session.post.call_args.kwargs['data'].endswith('FORMAT JSONEachRow')
        assert session.headers['X-ClickHouse-User'] == 'reader'

    def test_http_error_returned_as_envelope(self):
        client, _ = self.make_client(MagicMock(status_code=500, text='Code: 62. Syntax error'))

        assert client.execute_query('SELEC')['status'] == 'HTTP 500'

    def test_connection_error(self):
        client, _ = self.make_client(error=requests.exceptions.Timeout('slow'))

        with pytest.raises(TransportError):
            client.execute_query('SELECT 1')

    def test_garbage_body(self):
        client, _ = self.make_client(MagicMock(status_code=200, text='{not json'))

        with pytest.raises(TransportError):
            client.execute_query('SELECT 1')
