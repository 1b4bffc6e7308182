#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import pytest

from bundle_analyzer.analysis import ZERO_ADDRESS, DexAnalyzer, TokenAnalyzer
from bundle_analyzer.config import ModuleConfig
from bundle_analyzer.errors import FatalAnalysisError, TransientNetworkError
from bundle_analyzer.explorer import ScanClient
from bundle_analyzer.models import Holder, TokenMetadata
from bundle_analyzer.utils import Utils

from conftest import DEPLOYER, TOKEN, UNISWAP_V2, WALLET_A, WALLET_B, WALLET_C, make_tx

METADATA = TokenMetadata(address=TOKEN, name="Test Token", symbol="TST", decimals=18,
                         total_supply=str(1000 * 10 ** 18))


class FakeFetch:
    """Substitui ``Utils.fetch_with_retry`` respondendo por trecho de URL"""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def __call__(self, session, url, retries=3, raise_on_failure=False, **kwargs):
        self.calls.append((url, kwargs.get('params')))
        for fragment, response in self.responses.items():
            if fragment in url:
                if isinstance(response, Exception):
                    if raise_on_failure:
                        raise response
                    return None
                if callable(response):
                    return response(kwargs.get('params'))
                return response
        if raise_on_failure:
            raise TransientNetworkError(f"unexpected url {url}")
        return None


@pytest.fixture
def moralis_config(tmp_path, monkeypatch):
    monkeypatch.delenv('CONFIG_ENCRYPTION_KEY', raising=False)
    return ModuleConfig.from_dict({
        'providers': {'moralis_api_key': 'test-key'},
        'networks': {'ethereum': {'scan_api_key': 'scan-key'}},
        'data_dir': str(tmp_path),
    })


def install_fetch(monkeypatch, responses) -> FakeFetch:
    fake = FakeFetch(responses)
    monkeypatch.setattr(Utils, 'fetch_with_retry', staticmethod(fake))
    return fake


# ------------------------------------------
# Holders
# ------------------------------------------

def test_normalize_holders_sorts_by_balance():
    rows = [
        {'owner_address': WALLET_A, 'balance': str(10 * 10 ** 18)},
        {'owner_address': WALLET_B, 'balance': str(200 * 10 ** 18)},
        {'balance': '5'}
    ]
    holders = TokenAnalyzer.normalize_holders(rows, METADATA)

    assert [h.address for h in holders] == [WALLET_B, WALLET_A]
    assert holders[0].percentage == pytest.approx(20.0)


def test_holders_from_transfers_sums_inflows_only():
    transfers = [
        make_tx("0x1", ZERO_ADDRESS, WALLET_A, value=100 * 10 ** 18),
        make_tx("0x2", WALLET_A, WALLET_B, value=60 * 10 ** 18),
        make_tx("0x3", WALLET_B, ZERO_ADDRESS, value=10 * 10 ** 18),
        make_tx("0x4", WALLET_C, WALLET_B, value=5 * 10 ** 18)
    ]
    holders = TokenAnalyzer.holders_from_transfers(transfers, METADATA)

    balances = {h.address: h.balance for h in holders}
    assert balances == {WALLET_A: pytest.approx(100.0), WALLET_B: pytest.approx(65.0)}
    assert holders[0].address == WALLET_A


def test_holders_from_transfers_respects_limit():
    transfers = [make_tx(f"0x{i}", DEPLOYER, f"0x{i:040x}", value=i + 1) for i in range(5)]
    holders = TokenAnalyzer.holders_from_transfers(transfers, METADATA, limit=2)
    assert len(holders) == 2
    assert holders[0].balance_raw == 5


def test_holder_distribution():
    holders = [
        Holder(address=WALLET_A, balance_raw=0, balance=90.0, percentage=9.0),
        Holder(address=WALLET_B, balance_raw=0, balance=10.0, percentage=1.0)
    ]
    distribution = TokenAnalyzer.holder_distribution(holders)

    assert distribution['total_holders'] == 2
    assert distribution['top10_percent'] == pytest.approx(10.0)
    assert 0 < distribution['gini_coefficient'] < 1
    assert TokenAnalyzer.holder_distribution([])['total_holders'] == 0


# ------------------------------------------
# TokenAnalyzer com provedores simulados
# ------------------------------------------

async def test_metadata_from_moralis_is_cached(moralis_config, monkeypatch):
    fake = install_fetch(monkeypatch, {
        '/erc20/metadata': [{
            'name': 'Test Token', 'symbol': 'TST', 'decimals': '9', 'total_supply': '1000000000000'
        }]
    })
    analyzer = TokenAnalyzer(moralis_config)
    try:
        first = await analyzer.get_token_metadata(TOKEN.upper().replace('0X', '0x'), 'ethereum')
        second = await analyzer.get_token_metadata(TOKEN, 'ethereum')
    finally:
        await analyzer.close()

    assert first == second
    assert first.decimals == 9
    assert first.total_supply_human == pytest.approx(1000.0)
    assert len(fake.calls) == 1
    assert ('chain', '0x1') in fake.calls[0][1]


async def test_metadata_failure_is_fatal(config):
    analyzer = TokenAnalyzer(config)
    with pytest.raises(FatalAnalysisError) as info:
        await analyzer.get_token_metadata(TOKEN, 'ethereum')
    assert info.value.stage == "metadata"
    await analyzer.close()


async def test_top_holders_from_moralis(moralis_config, monkeypatch):
    install_fetch(monkeypatch, {
        '/owners': {'result': [
            {'owner_address': WALLET_A, 'balance': str(50 * 10 ** 18)},
            {'owner_address': WALLET_B, 'balance': str(300 * 10 ** 18)}
        ]}
    })
    analyzer = TokenAnalyzer(moralis_config)
    try:
        holders = await analyzer.get_top_holders(TOKEN, 'ethereum', METADATA)
    finally:
        await analyzer.close()

    assert [h.address for h in holders] == [WALLET_B, WALLET_A]
    assert holders[0].percentage == pytest.approx(30.0)


async def test_top_holders_fall_back_to_token_transfers(moralis_config, monkeypatch):
    install_fetch(monkeypatch, {
        '/owners': TransientNetworkError("moralis down"),
        'etherscan': {'status': '1', 'message': 'OK', 'result': [
            {'hash': '0x1', 'from': ZERO_ADDRESS, 'to': WALLET_A, 'value': str(40 * 10 ** 18), 'timeStamp': '1'},
            {'hash': '0x2', 'from': WALLET_A, 'to': WALLET_B, 'value': str(10 * 10 ** 18), 'timeStamp': '2'}
        ]}
    })
    analyzer = TokenAnalyzer(moralis_config)
    try:
        holders = await analyzer.get_top_holders(TOKEN, 'ethereum', METADATA)
    finally:
        await analyzer.close()

    assert [(h.address, h.balance) for h in holders] == [(WALLET_A, 40.0), (WALLET_B, 10.0)]


async def test_holders_failure_is_fatal(moralis_config, monkeypatch):
    install_fetch(monkeypatch, {
        '/owners': TransientNetworkError("moralis down"),
        'etherscan': TransientNetworkError("explorer down")
    })
    analyzer = TokenAnalyzer(moralis_config)
    try:
        with pytest.raises(FatalAnalysisError) as info:
            await analyzer.get_top_holders(TOKEN, 'ethereum', METADATA)
    finally:
        await analyzer.close()
    assert info.value.stage == "holders"


async def test_balance_missing_row_means_zero(moralis_config, monkeypatch):
    install_fetch(monkeypatch, {'/erc20': []})
    analyzer = TokenAnalyzer(moralis_config)
    try:
        assert await analyzer.get_token_balance(WALLET_A, TOKEN, 'ethereum') == 0.0
    finally:
        await analyzer.close()


async def test_balance_from_moralis_row(moralis_config, monkeypatch):
    install_fetch(monkeypatch, {'/erc20': [
        {'token_address': TOKEN, 'balance': str(1234 * 10 ** 16), 'decimals': 18}
    ]})
    analyzer = TokenAnalyzer(moralis_config)
    try:
        assert await analyzer.get_token_balance(WALLET_A, TOKEN, 'ethereum') == pytest.approx(12.34)
    finally:
        await analyzer.close()


async def test_balance_without_any_source_is_none(config):
    analyzer = TokenAnalyzer(config)
    assert await analyzer.get_token_balance(WALLET_A, TOKEN, 'ethereum') is None
    await analyzer.close()


# ------------------------------------------
# Explorador
# ------------------------------------------

async def test_scan_client_contract_creation(moralis_config, monkeypatch):
    fake = install_fetch(monkeypatch, {'etherscan': {'status': '1', 'message': 'OK', 'result': [
        {'contractCreator': DEPLOYER.upper().replace('0X', '0x'), 'txHash': '0xabc', 'blockNumber': '123'}
    ]}})
    client = ScanClient(moralis_config.get_network('ethereum'), moralis_config)
    try:
        deployer = await client.get_contract_creation(TOKEN)
    finally:
        await client.close()

    assert deployer.address == DEPLOYER
    assert deployer.block_number == 123
    assert fake.calls[0][1]['apikey'] == 'scan-key'


async def test_scan_client_no_transactions_is_empty(moralis_config, monkeypatch):
    install_fetch(monkeypatch, {'etherscan': {'status': '0', 'message': 'No transactions found', 'result': []}})
    client = ScanClient(moralis_config.get_network('ethereum'), moralis_config)
    try:
        assert await client.get_transactions(WALLET_A) == []
    finally:
        await client.close()


async def test_was_funded_by_requires_incoming_transfer(moralis_config, monkeypatch):
    install_fetch(monkeypatch, {'etherscan': {'status': '1', 'message': 'OK', 'result': [
        {'hash': '0x1', 'from': WALLET_A, 'to': DEPLOYER, 'value': '1', 'timeStamp': '1'},
        {'hash': '0x2', 'from': DEPLOYER, 'to': WALLET_B, 'value': '1', 'timeStamp': '2'}
    ]}})
    client = ScanClient(moralis_config.get_network('ethereum'), moralis_config)
    try:
        assert await client.was_funded_by(WALLET_B, DEPLOYER) is True
        assert await client.was_funded_by(WALLET_A, DEPLOYER) is False
    finally:
        await client.close()


# ------------------------------------------
# Mercado
# ------------------------------------------

def test_select_main_pair_prefers_liquidity_on_chain():
    pairs = [
        {'chainId': 'ethereum', 'pairAddress': '0x1', 'liquidity': {'usd': 1000}},
        {'chainId': 'bsc', 'pairAddress': '0x2', 'liquidity': {'usd': 99999}},
        {'chainId': 'ethereum', 'pairAddress': '0x3', 'liquidity': {'usd': 5000}}
    ]
    assert DexAnalyzer.select_main_pair(pairs, 'ethereum')['pairAddress'] == '0x3'
    assert DexAnalyzer.select_main_pair([], 'ethereum') is None


async def test_market_data_and_price(moralis_config, monkeypatch):
    install_fetch(monkeypatch, {'/dex/tokens/': {'pairs': [{
        'chainId': 'ethereum', 'dexId': 'uniswap', 'pairAddress': '0xpair',
        'priceUsd': '0.5', 'priceChange': {'h24': -3.2}, 'volume': {'h24': 1200},
        'liquidity': {'usd': 50000}, 'fdv': 1000000, 'marketCap': 800000
    }]}})
    dex = DexAnalyzer(moralis_config)
    try:
        market = await dex.get_market_data(TOKEN, 'ethereum')
        price = await dex.get_token_price(TOKEN, 'ethereum')
    finally:
        await dex.close()

    assert market['price'] == 0.5
    assert market['liquidity_usd'] == 50000.0
    assert market['dex_id'] == 'uniswap'
    assert price == 0.5


async def test_market_data_failure_is_empty(moralis_config, monkeypatch):
    install_fetch(monkeypatch, {'/dex/tokens/': TransientNetworkError("dexscreener down")})
    dex = DexAnalyzer(moralis_config)
    try:
        assert await dex.get_market_data(TOKEN, 'ethereum') == {}
        assert await dex.get_token_price(TOKEN, 'ethereum') == 0.0
    finally:
        await dex.close()


def test_identify_venue():
    assert DexAnalyzer.identify_venue(UNISWAP_V2, 'ethereum') == "Uniswap V2"
    assert DexAnalyzer.identify_venue(WALLET_A, 'ethereum') == "0xaaaa...aaaa"
    assert DexAnalyzer.identify_venue(None, 'ethereum') == "Unknown"
    assert DexAnalyzer.is_dex_router(UNISWAP_V2.upper().replace('0X', '0x'), 'ethereum')
    assert not DexAnalyzer.is_dex_router(UNISWAP_V2, 'base')
