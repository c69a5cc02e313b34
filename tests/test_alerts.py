import pytest

from alerts import (
    AlertEvent, AlertKind, Severity, classify_severity, format_address, format_wei, render_message, render_text,
)

EXPLORER = 'https://hoodi.beaconcha.in'


@pytest.mark.parametrize('kind, new_value, severity', [
    (AlertKind.SLASH_CHANGE, True, Severity.CRITICAL),
    (AlertKind.API_ERROR, None, Severity.CRITICAL),
    (AlertKind.BALANCE_DECREASING, 31.9, Severity.WARNING),
    (AlertKind.BLOCK_MISSED, None, Severity.WARNING),
    (AlertKind.BLOCK_EMPTY, None, Severity.WARNING),
    (AlertKind.BLOCK_ORPHANED, None, Severity.WARNING),
    (AlertKind.ATTESTATIONS_MISSED_DELAYED, None, Severity.WARNING),
    (AlertKind.SYNC_COMMITTEE_MISSED, None, Severity.WARNING),
    (AlertKind.BLOCK_PROPOSED, None, Severity.POSITIVE),
    (AlertKind.SYNC_COMMITTEE, None, Severity.POSITIVE),
    (AlertKind.STATUS_CHANGE, 'active_online', Severity.POSITIVE),
    (AlertKind.STATUS_CHANGE, 'exiting_online', Severity.POSITIVE),
    (AlertKind.STATUS_CHANGE, 'active_offline', Severity.CAUTION),
    (AlertKind.STATUS_CHANGE, 'slashed', Severity.CRITICAL),
    (AlertKind.STATUS_CHANGE, 'exited', Severity.NEUTRAL),
    (AlertKind.CONSOLIDATION_EVENT, None, Severity.NEUTRAL),
])
def test_classify_severity(kind, new_value, severity):
    assert classify_severity(kind, new_value) == severity


def test_render_change_with_link():
    event = AlertEvent(kind=AlertKind.STATUS_CHANGE, protocol='lido', vc_location='vc-01',
                       validator_index=42, old_value='active_online', new_value='exiting_online')

    embed = render_message(event, 'hoodi', EXPLORER)

    assert embed['title'] == 'STATUS-CHANGE'
    assert embed['color'] == Severity.POSITIVE.color
    assert embed['url'] == f'{EXPLORER}/validator/42'
    lines = embed['description'].splitlines()
    assert lines[:3] == ['Network: hoodi', 'Protocol: lido', 'Location: vc-01']
    assert 'active_online 🡺 exiting_online' in lines
    assert lines[-1] == f'[Validator 42](<{EXPLORER}/validator/42>)'


def test_render_detail_without_index():
    event = AlertEvent(kind=AlertKind.API_ERROR, detail='Failed to fetch attestations: timeout')

    embed = render_message(event, 'mainnet', EXPLORER)

    assert 'url' not in embed
    assert embed['description'] == 'Network: mainnet\nFailed to fetch attestations: timeout'


def test_render_text_is_single_line():
    event = AlertEvent(kind=AlertKind.BLOCK_MISSED, validator_index=7, detail='Slot: 100 (epoch 3)')

    text = render_text(event, 'hoodi', EXPLORER)

    assert '\n' not in text
    assert text.startswith('BLOCK-MISSED | Network: hoodi')


@pytest.mark.parametrize('wei, expected', [
    (2 * 10 ** 18, '2 ETH'),
    (15 * 10 ** 17, '1.5 ETH'),
    (100 * 10 ** 18, '100 ETH'),
    (None, 'unknown'),
])
def test_format_wei(wei, expected):
    assert format_wei(wei) == expected


def test_format_address_checksums():
    assert format_address('0xd8da6bf26964af9d7eed9e03e53415d37aa96045') == \
        '0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045'
    assert format_address(None) == 'unknown'
    assert format_address('not-an-address') == 'not-an-address'
