from unittest.mock import patch

import pytest

from monitor_config import DATA_SOURCE_GOTETH, MonitorConfig
from monitor_errors import ConfigurationError

ENV_KEYS = ['DATA_SOURCE', 'BEACONCHAIN_ENDPOINT_HOODI', 'BEACONCHAIN_ENDPOINT_GNOSIS', 'BEACONCHAIN_EXPLORER_HOODI',
            'BALANCE_DECREASE_THRESHOLD', 'AGGREGATE_MISSED_ATTESTATIONS', 'SLOTS_PER_EPOCH',
            'NOTIFY_SUCCESSFUL_PROPOSALS', 'LARGE_BLOCK_THRESHOLD_ETH', 'DISCORD_WEBHOOK_URL']


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    with patch('monitor_config.load_dotenv'):
        yield monkeypatch


def test_defaults(clean_env):
    clean_env.setenv('BEACONCHAIN_ENDPOINT_HOODI', 'https://hoodi.beaconcha.in/')

    config = MonitorConfig.from_env('Hoodi')

    assert config.network == 'hoodi'
    assert config.beaconchain_endpoint == 'https://hoodi.beaconcha.in'
    assert config.explorer_url == 'https://hoodi.beaconcha.in'
    assert config.balance_decrease_threshold == 100000
    assert config.aggregate_missed_attestations is True
    assert config.slots_per_epoch == 32
    assert config.large_block_threshold_wei == 10 ** 18
    assert config.discord_webhook_url is None


def test_overrides(clean_env):
    clean_env.setenv('BEACONCHAIN_ENDPOINT_HOODI', 'https://hoodi.beaconcha.in')
    clean_env.setenv('BEACONCHAIN_EXPLORER_HOODI', 'https://explorer.example')
    clean_env.setenv('BALANCE_DECREASE_THRESHOLD', '500')
    clean_env.setenv('AGGREGATE_MISSED_ATTESTATIONS', 'false')
    clean_env.setenv('NOTIFY_SUCCESSFUL_PROPOSALS', 'true')
    clean_env.setenv('LARGE_BLOCK_THRESHOLD_ETH', '0.5')

    config = MonitorConfig.from_env('hoodi')

    assert config.explorer_url == 'https://explorer.example'
    assert config.balance_decrease_threshold == 500
    assert config.aggregate_missed_attestations is False
    assert config.notify_successful_proposals is True
    assert config.large_block_threshold_wei == 5 * 10 ** 17


def test_gnosis_slots_per_epoch(clean_env):
    clean_env.setenv('BEACONCHAIN_ENDPOINT_GNOSIS', 'https://gnosischa.in')

    assert MonitorConfig.from_env('gnosis').slots_per_epoch == 16


def test_missing_endpoint_rejected(clean_env):
    with pytest.raises(ConfigurationError):
        MonitorConfig.from_env('hoodi')


def test_goteth_needs_no_beaconchain_endpoint(clean_env):
    clean_env.setenv('DATA_SOURCE', 'goteth')

    config = MonitorConfig.from_env('hoodi')

    assert config.data_source == DATA_SOURCE_GOTETH
    assert config.beaconchain_endpoint is None


def test_unknown_data_source_rejected(clean_env):
    clean_env.setenv('DATA_SOURCE', 'etherscan')

    with pytest.raises(ConfigurationError):
        MonitorConfig.from_env('hoodi')


def test_malformed_number_rejected(clean_env):
    clean_env.setenv('BEACONCHAIN_ENDPOINT_HOODI', 'https://hoodi.beaconcha.in')
    clean_env.setenv('BALANCE_DECREASE_THRESHOLD', 'lots')

    with pytest.raises(ConfigurationError):
        MonitorConfig.from_env('hoodi')
