"""
Monitor configuration.

Everything the monitor needs is collected into one MonitorConfig object that
is handed to each component at construction. Only MonitorConfig.from_env
reads the process environment.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from monitor_errors import ConfigurationError

DATA_SOURCE_BEACONCHAIN = 'beaconchain'
DATA_SOURCE_GOTETH = 'goteth'

DEFAULT_EXPLORERS = {
    'mainnet': 'https://beaconcha.in',
    'gnosis': 'https://gnosischa.in',
    'holesky': 'https://holesky.beaconcha.in',
    'hoodi': 'https://hoodi.beaconcha.in',
    'sepolia': 'https://sepolia.beaconcha.in',
}

DEFAULT_SLOTS_PER_EPOCH = {
    'gnosis': 16,
}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


@dataclass
class MonitorConfig:
    network: str
    data_source: str = DATA_SOURCE_BEACONCHAIN

    # beaconcha.in
    beaconchain_endpoint: Optional[str] = None
    beaconchain_api_key: Optional[str] = None
    explorer_url: Optional[str] = None

    # goteth / ClickHouse
    clickhouse_host: str = 'localhost'
    clickhouse_port: int = 8123
    clickhouse_database: str = 'goteth_default'
    clickhouse_user: str = 'default'
    clickhouse_password: str = ''
    clickhouse_use_ssl: bool = False

    # Notification
    discord_webhook_url: Optional[str] = None
    notification_delay_seconds: float = 1.0

    # Store
    store_file: str = 'validators.json'

    # Thresholds, in gwei unless stated otherwise
    balance_decrease_threshold: int = 100000
    large_block_threshold_eth: float = 1.0
    notify_successful_proposals: bool = False
    sync_committee_participation_target: int = 30
    consolidation_lookback_epochs: int = 100

    # Batching
    index_resolution_sample_size: int = 100
    beaconchain_index_chunk_size: int = 50
    beaconchain_chunk_size: int = 100
    goteth_chunk_size: int = 5000

    # Attestation aggregation
    aggregate_missed_attestations: bool = True
    max_attestation_examples: int = 10

    slots_per_epoch: int = 32
    request_timeout: int = 30

    log_level: str = 'INFO'
    log_file: str = 'validator_monitor.log'

    @property
    def large_block_threshold_wei(self) -> int:
        return int(self.large_block_threshold_eth * 10 ** 18)

    @classmethod
    def from_env(cls, network: str) -> 'MonitorConfig':
        """Build the configuration for one network from environment variables."""
        load_dotenv()

        if not network:
            raise ConfigurationError("A network name is required")
        network = network.lower()
        suffix = network.upper()

        data_source = os.getenv('DATA_SOURCE', DATA_SOURCE_BEACONCHAIN).lower()
        if data_source not in (DATA_SOURCE_BEACONCHAIN, DATA_SOURCE_GOTETH):
            raise ConfigurationError(f"Unknown DATA_SOURCE {data_source!r}")

        beaconchain_endpoint = os.getenv(f'BEACONCHAIN_ENDPOINT_{suffix}')
        if data_source == DATA_SOURCE_BEACONCHAIN and not beaconchain_endpoint:
            raise ConfigurationError(f"BEACONCHAIN_ENDPOINT_{suffix} environment variable not set")

        explorer_url = (os.getenv(f'BEACONCHAIN_EXPLORER_{suffix}')
                        or DEFAULT_EXPLORERS.get(network)
                        or beaconchain_endpoint)

        return cls(
            network=network,
            data_source=data_source,
            beaconchain_endpoint=beaconchain_endpoint.rstrip('/') if beaconchain_endpoint else None,
            beaconchain_api_key=os.getenv('BEACONCHAIN_API_KEY'),
            explorer_url=explorer_url.rstrip('/') if explorer_url else None,
            clickhouse_host=os.getenv('CH_HOST', 'localhost'),
            clickhouse_port=_env_int('CH_HTTP_PORT', 8123),
            clickhouse_database=os.getenv('CH_DB', 'goteth_default'),
            clickhouse_user=os.getenv('CH_USER', 'default'),
            clickhouse_password=os.getenv('CH_PASSWORD', ''),
            clickhouse_use_ssl=_env_bool('CH_USE_SSL', False),
            discord_webhook_url=os.getenv('DISCORD_WEBHOOK_URL'),
            notification_delay_seconds=_env_float('NOTIFICATION_DELAY_SECONDS', 1.0),
            store_file=os.getenv('VALIDATOR_STORE_FILE', 'validators.json'),
            balance_decrease_threshold=_env_int('BALANCE_DECREASE_THRESHOLD', 100000),
            large_block_threshold_eth=_env_float('LARGE_BLOCK_THRESHOLD_ETH', 1.0),
            notify_successful_proposals=_env_bool('NOTIFY_SUCCESSFUL_PROPOSALS', False),
            sync_committee_participation_target=_env_int('SYNC_COMMITTEE_PARTICIPATIONS_NUMBER_TARGET', 30),
            consolidation_lookback_epochs=_env_int('CONSOLIDATION_LOOKBACK_EPOCHS', 100),
            index_resolution_sample_size=_env_int('INDEX_RESOLUTION_SAMPLE_SIZE', 100),
            beaconchain_index_chunk_size=_env_int('BEACONCHAIN_INDEX_CHUNK_SIZE', 50),
            beaconchain_chunk_size=_env_int('BEACONCHAIN_CHUNK_SIZE', 100),
            goteth_chunk_size=_env_int('GOTETH_CHUNK_SIZE', 5000),
            aggregate_missed_attestations=_env_bool('AGGREGATE_MISSED_ATTESTATIONS', True),
            max_attestation_examples=_env_int('MAX_ATTESTATION_EXAMPLES', 10),
            slots_per_epoch=_env_int('SLOTS_PER_EPOCH', DEFAULT_SLOTS_PER_EPOCH.get(network, 32)),
            request_timeout=_env_int('REQUEST_TIMEOUT', 30),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            log_file=os.getenv('LOG_FILE', 'validator_monitor.log'),
        )
