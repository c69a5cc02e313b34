"""
goteth ClickHouse data source.

Queries the tables goteth maintains in ClickHouse over the HTTP interface and
wraps every result in the same {"status": "OK", "data": [...]} envelope the
beaconcha.in API uses, so both backends are interchangeable.

Tables used:
- t_validator_last_status / t_status: latest balance, status and slashing
- t_validator_rewards_summary: per-epoch attestation and sync committee data
- t_block_metrics / t_orphans / t_block_rewards: proposals and execution data
- t_finalized_checkpoint: finality
- t_consolidation_requests: consolidation events
"""

import json
import logging
import re
from typing import Any, Dict, List, Sequence, Union

import requests

from data_source import (
    OP_ATTESTATIONS, OP_BLOCKS, OP_CONSOLIDATIONS, OP_INDEX_CONVERSION, OP_SYNC_COMMITTEE,
    OP_VALIDATOR_INFO, PROPOSAL_MISSED, PROPOSAL_ORPHANED, PROPOSAL_PROPOSED,
    AttestationOutcome, BlockProposal, ConsolidationEvent, DataSource, ExecutionBlock,
    ROW_ERRORS, SyncParticipation, ValidatorInfo, as_int, normalize_pubkey, unwrap_envelope,
)
from monitor_config import MonitorConfig
from monitor_errors import TransportError, UpstreamError

logger = logging.getLogger(__name__)

PUBKEY_PATTERN = re.compile(r'^0x[0-9a-f]{96}$')

PROPOSAL_STATUSES = {
    '0': PROPOSAL_MISSED,
    '1': PROPOSAL_PROPOSED,
    '2': PROPOSAL_ORPHANED,
}

GWEI_PER_ETH = 10 ** 9


class ClickHouseHTTPClient:
    """Simple HTTP client for ClickHouse queries"""

    def __init__(self, host: str = "localhost", port: int = 8123, database: str = "default",
                 user: str = "default", password: str = "", use_ssl: bool = False, timeout: int = 30,
                 session: requests.Session = None):
        scheme = 'https' if use_ssl else 'http'
        self.base_url = f"{scheme}://{host}:{port}/"
        self.database = database
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': 'Validator-Monitor/1.0',
            'X-ClickHouse-User': user,
            'X-ClickHouse-Key': password,
        })

    def execute_query(self, query: str) -> Dict[str, Any]:
        """Run a query and return an envelope holding the JSONEachRow rows."""
        logger.debug(f"Executing query: {' '.join(query.split())[:200]}...")

        try:
            response = self.session.post(
                self.base_url,
                params={'database': self.database},
                data=f"{query}\nFORMAT JSONEachRow",
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise TransportError(f"ClickHouse query failed: {e}")

        if response.status_code != 200:
            return {'status': f"HTTP {response.status_code}", 'error': response.text[:500]}

        rows = []
        try:
            for line in response.text.splitlines():
                if line.strip():
                    rows.append(json.loads(line))
        except ValueError as e:
            raise TransportError(f"Invalid ClickHouse response: {e}")

        return {'status': 'OK', 'data': rows}


def _as_bool(value: Any) -> bool:
    return str(value).strip().lower() in ('1', 'true')


class GotethDataSource(DataSource):
    """Analytical-store backend over goteth's ClickHouse tables."""

    name = 'goteth'

    supports_missing_sync_committee = True
    supports_consolidations = True

    def __init__(self, config: MonitorConfig, client: ClickHouseHTTPClient = None):
        chunk_sizes = {
            OP_INDEX_CONVERSION: config.goteth_chunk_size,
            OP_VALIDATOR_INFO: config.goteth_chunk_size,
            OP_ATTESTATIONS: config.goteth_chunk_size,
            OP_BLOCKS: config.goteth_chunk_size,
            OP_SYNC_COMMITTEE: config.goteth_chunk_size,
            OP_CONSOLIDATIONS: config.goteth_chunk_size,
        }
        super().__init__(config.network, chunk_sizes)

        self.slots_per_epoch = config.slots_per_epoch
        self.clickhouse = client or ClickHouseHTTPClient(
            host=config.clickhouse_host,
            port=config.clickhouse_port,
            database=config.clickhouse_database,
            user=config.clickhouse_user,
            password=config.clickhouse_password,
            use_ssl=config.clickhouse_use_ssl,
            timeout=config.request_timeout,
        )

    def _query(self, query: str) -> List[Dict[str, Any]]:
        return unwrap_envelope(self.clickhouse.execute_query(query))

    @staticmethod
    def _index_list(ids: Sequence[int]) -> str:
        return ','.join(str(int(i)) for i in ids)

    @staticmethod
    def _pubkey_list(pubkeys: Sequence[str]) -> str:
        keys = []
        for key in pubkeys:
            key = normalize_pubkey(key)
            if not PUBKEY_PATTERN.match(key):
                logger.warning(f"Skipping malformed public key {key[:20]}")
                continue
            keys.append(f"'{key}'")
        return ','.join(keys)

    @staticmethod
    def _watermark_conditions(watermarks: Dict[int, int], index_column: str, epoch_column: str) -> str:
        return ' OR '.join(
            f"({index_column} = {int(index)} AND {epoch_column} > {int(epoch)})"
            for index, epoch in watermarks.items()
        )

    def fetch_validator_info(self, ids: Sequence[Union[int, str]]) -> List[ValidatorInfo]:
        if not ids:
            return []

        by_index = all(isinstance(v, int) or str(v).isdigit() for v in ids)
        if by_index:
            where_clause = f"tvls.f_val_idx IN ({self._index_list(ids)})"
        else:
            pubkeys = self._pubkey_list(ids)
            if not pubkeys:
                return []
            where_clause = f"tvls.f_public_key IN ({pubkeys})"

        query = f"""
        SELECT
            tvls.f_val_idx AS validatorindex,
            tvls.f_public_key AS pubkey,
            tvls.f_balance_eth AS balance,
            tvls.f_status AS status_number,
            tvls.f_slashed AS slashed,
            tvls.f_exit_epoch AS exit_epoch,
            ts.f_status AS status
        FROM t_validator_last_status tvls
        LEFT JOIN t_status ts ON tvls.f_status = ts.f_id
        WHERE {where_clause}
        ORDER BY tvls.f_val_idx
        """

        results = []
        try:
            for row in self._query(query):
                status = row.get('status')
                if status in (None, ''):
                    status = row.get('status_number')
                results.append(ValidatorInfo(
                    validator_index=int(row['validatorindex']),
                    public_key=normalize_pubkey(row['pubkey']),
                    balance=round(float(row.get('balance') or 0) * GWEI_PER_ETH),
                    status=str(status),
                    slashed=_as_bool(row.get('slashed')),
                    exit_epoch=as_int(row.get('exit_epoch')),
                ))
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed validator row: {e!r}")
        return results

    def fetch_attestations(self, ids: Sequence[int], since_epoch: int) -> List[AttestationOutcome]:
        if not ids:
            return []

        query = f"""
        SELECT
            f_val_idx AS validatorindex,
            f_epoch AS epoch,
            f_missing_source,
            f_missing_target,
            f_missing_head
        FROM t_validator_rewards_summary
        WHERE f_val_idx IN ({self._index_list(ids)})
        AND f_epoch > {int(since_epoch)}
        AND f_epoch <= (SELECT MAX(f_epoch) FROM t_finalized_checkpoint)
        ORDER BY f_epoch ASC, f_val_idx
        """

        results = []
        try:
            for row in self._query(query):
                # Only a vote missing source, target and head counts as missed
                missed = (_as_bool(row.get('f_missing_source'))
                          and _as_bool(row.get('f_missing_target'))
                          and _as_bool(row.get('f_missing_head')))
                results.append(AttestationOutcome(
                    validator_index=int(row['validatorindex']),
                    epoch=int(row['epoch']),
                    successful=not missed,
                ))
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed attestation row: {e!r}")
        return results

    def fetch_blocks(self, ids: Sequence[int], watermarks: Dict[int, int], epoch: int) -> List[BlockProposal]:
        pairs = {index: watermarks.get(index, 0) for index in ids}
        if not pairs:
            return []

        conditions = self._watermark_conditions(pairs, 'bm.f_proposer_index', 'bm.f_epoch')
        query = f"""
        SELECT
            CASE WHEN bm.f_proposed = 1 THEN '1' ELSE '0' END AS status,
            bm.f_proposer_index AS proposer,
            bm.f_slot AS slot,
            bm.f_epoch AS epoch,
            bm.f_graffiti AS graffiti_text,
            bm.f_el_block_number AS exec_block_number,
            bm.f_el_fee_recp AS exec_fee_recipient,
            bm.f_el_gas_limit AS exec_gas_limit,
            bm.f_el_gas_used AS exec_gas_used,
            bm.f_el_transactions AS exec_transactions_count
        FROM t_block_metrics bm
        WHERE ({conditions})
        AND bm.f_epoch <= {int(epoch)}
        ORDER BY bm.f_epoch DESC, bm.f_slot DESC
        """
        rows = self._query(query)

        results = []
        try:
            # Reorged blocks have no execution block in t_block_metrics
            without_block = [row for row in rows if str(row.get('exec_block_number')) == '0']
            if without_block:
                logger.info(f"Found {len(without_block)} blocks without execution block, checking t_orphans")
                orphans = self._fetch_orphans(without_block)
                rows = [orphans.get((str(row['proposer']), str(row['slot'])), row) for row in rows]

            for row in rows:
                outcome = PROPOSAL_STATUSES.get(str(row.get('status')))
                if outcome is None:
                    logger.warning(f"Unknown proposal status {row.get('status')!r} for slot {row.get('slot')}")
                    continue

                results.append(BlockProposal(
                    validator_index=int(row['proposer']),
                    epoch=int(row['epoch']),
                    slot=int(row['slot']),
                    outcome=outcome,
                    exec_block_number=as_int(row.get('exec_block_number')),
                    fee_recipient=row.get('exec_fee_recipient'),
                    transactions_count=as_int(row.get('exec_transactions_count')),
                    gas_used=as_int(row.get('exec_gas_used')),
                    gas_limit=as_int(row.get('exec_gas_limit')),
                    graffiti=row.get('graffiti_text'),
                ))
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed proposal row: {e!r}")
        return results

    def _fetch_orphans(self, rows: List[Dict[str, Any]]) -> Dict[tuple, Dict[str, Any]]:
        conditions = ' OR '.join(
            f"(o.f_proposer_index = {int(row['proposer'])} AND o.f_slot = {int(row['slot'])})"
            for row in rows
        )
        query = f"""
        SELECT
            '2' AS status,
            o.f_proposer_index AS proposer,
            o.f_slot AS slot,
            o.f_epoch AS epoch,
            o.f_graffiti AS graffiti_text,
            o.f_el_block_number AS exec_block_number,
            o.f_el_fee_recp AS exec_fee_recipient,
            o.f_el_gas_limit AS exec_gas_limit,
            o.f_el_gas_used AS exec_gas_used,
            o.f_el_transactions AS exec_transactions_count
        FROM t_orphans o
        WHERE {conditions}
        """
        return {(str(row['proposer']), str(row['slot'])): row for row in self._query(query)}

    def fetch_epoch(self, epoch: Union[int, str] = 'latest') -> int:
        if epoch == 'latest':
            query = "SELECT MAX(f_epoch) AS epoch FROM t_finalized_checkpoint"
        else:
            query = f"SELECT f_epoch AS epoch FROM t_block_metrics WHERE f_epoch = {int(epoch)} LIMIT 1"

        rows = self._query(query)
        try:
            latest = as_int(rows[0].get('epoch')) if rows else None
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed epoch {epoch}: {e!r}")
        if latest is None:
            raise UpstreamError(f"No epoch {epoch} in ClickHouse", rows)
        return latest

    def fetch_execution_block(self, block_number: int) -> ExecutionBlock:
        query = f"""
        SELECT
            bm.f_el_block_number AS block_number,
            br.f_bid_commission AS producer_reward,
            bm.f_el_fee_recp AS fee_recipient,
            bm.f_el_gas_limit AS gas_limit,
            bm.f_el_gas_used AS gas_used,
            bm.f_el_transactions AS transactions_count
        FROM t_block_metrics bm
        LEFT JOIN t_block_rewards br ON bm.f_slot = br.f_slot
        WHERE bm.f_el_block_number = {int(block_number)}
        LIMIT 1
        """
        rows = self._query(query)
        if not rows:
            raise UpstreamError(f"Execution block {block_number} not found in ClickHouse", rows)

        row = rows[0]
        try:
            return ExecutionBlock(
                block_number=int(row['block_number']),
                producer_reward=as_int(row.get('producer_reward')),
                fee_recipient=row.get('fee_recipient'),
                gas_used=as_int(row.get('gas_used')),
                gas_limit=as_int(row.get('gas_limit')),
                transactions_count=as_int(row.get('transactions_count')),
            )
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed execution block {block_number}: {e!r}")

    def fetch_missing_sync_committee(self, watermarks: Dict[int, int], target: int) -> List[SyncParticipation]:
        if not watermarks:
            return []

        conditions = self._watermark_conditions(watermarks, 'f_val_idx', 'f_epoch')
        query = f"""
        SELECT
            f_val_idx AS validator_index,
            f_epoch AS epoch,
            f_sync_committee_participations_included AS participations
        FROM t_validator_rewards_summary
        WHERE ({conditions})
        AND f_sync_committee_participations_included < {int(target)}
        AND f_in_sync_committee = true
        ORDER BY f_epoch ASC
        """
        rows = self._query(query)
        try:
            return [
                SyncParticipation(
                    validator_index=int(row['validator_index']),
                    epoch=int(row['epoch']),
                    participations=int(row['participations']),
                )
                for row in rows
            ]
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed sync committee row: {e!r}")

    def fetch_consolidation_events(self, pubkeys: Sequence[str], from_epoch: int) -> List[ConsolidationEvent]:
        key_list = self._pubkey_list(pubkeys)
        if not key_list:
            return []

        first_slot = max(0, int(from_epoch)) * self.slots_per_epoch
        query = f"""
        SELECT
            f_slot AS slot,
            f_source_address AS source_address,
            f_source_pubkey AS source_pubkey,
            f_target_pubkey AS target_pubkey,
            f_result AS result
        FROM t_consolidation_requests
        WHERE (f_source_pubkey IN ({key_list}) OR f_target_pubkey IN ({key_list}))
        AND f_slot >= {first_slot}
        ORDER BY f_slot ASC
        """

        results = []
        try:
            for row in self._query(query):
                slot = int(row['slot'])
                results.append(ConsolidationEvent(
                    slot=slot,
                    epoch=slot // self.slots_per_epoch,
                    source_address=row.get('source_address'),
                    source_pubkey=normalize_pubkey(row['source_pubkey']),
                    target_pubkey=normalize_pubkey(row['target_pubkey']),
                    result=None if row.get('result') is None else str(row.get('result')),
                ))
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed consolidation row: {e!r}")
        return results
