#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import os
import tempfile

# Logs dos testes fora da árvore do projeto
os.environ.setdefault(
    'BUNDLE_ANALYZER_LOG_FILE',
    os.path.join(tempfile.gettempdir(), 'bundle_analyzer_tests.log')
)

import time
import asyncio
from typing import Dict, List, Optional
from datetime import datetime

import pytest
import pytz

from bundle_analyzer.config import ModuleConfig
from bundle_analyzer.analysis import DexAnalyzer
from bundle_analyzer.models import Deployer, Holder, SellAlert, TokenMetadata, Transaction, WalletType

TOKEN = "0x" + "1" * 40
DEPLOYER = "0x" + "d" * 40
WALLET_A = "0x" + "a" * 40
WALLET_B = "0x" + "b" * 40
WALLET_C = "0x" + "c" * 40
WALLET_E = "0x" + "e" * 40
UNISWAP_V2 = "0x7a250d5630b4cf539739df2c5dacb4c659f2488d"


class FakeAnalyzer:
    """Analisador em memória com respostas programadas por carteira"""

    def __init__(self):
        self.metadata = TokenMetadata(
            address=TOKEN, name="Test Token", symbol="TST", decimals=18,
            total_supply=str(1000 * 10 ** 18)
        )
        self.deployer: Optional[Deployer] = Deployer(address=DEPLOYER)
        self.holders: List[Holder] = []
        self.balances: Dict[str, List] = {}
        self.transfers: Dict[str, List[Transaction]] = {}
        self.transactions: Dict[str, List[Transaction]] = {}
        self.funded: set = set()
        self.errors: Dict[str, Exception] = {}
        self.balance_calls: List[str] = []
        self.balance_seen = asyncio.Event()

    async def get_token_metadata(self, contract_address: str, network: str) -> TokenMetadata:
        return self.metadata

    async def get_contract_deployer(self, contract_address: str, network: str) -> Optional[Deployer]:
        return self.deployer

    async def get_top_holders(self, contract_address: str, network: str, metadata, limit=None) -> List[Holder]:
        return list(self.holders)

    async def get_token_balance(self, wallet_address: str, token_address: str, network: str):
        self.balance_calls.append(wallet_address)
        self.balance_seen.set()
        if wallet_address in self.errors:
            raise self.errors[wallet_address]
        values = self.balances.get(wallet_address)
        if not values:
            return None
        # Repete o último valor quando a sequência acaba
        return values.pop(0) if len(values) > 1 else values[0]

    async def get_token_transfers(self, address: str, network: str, contract_address=None, limit: int = 100):
        return list(self.transfers.get(address, []))

    async def get_transactions(self, address: str, network: str, limit: int = 100):
        if address in self.errors:
            raise self.errors[address]
        return list(self.transactions.get(address, []))

    async def was_funded_by(self, wallet_address: str, funder_address: str, network: str) -> bool:
        return wallet_address in self.funded


class FakeDex:
    def __init__(self, price: float = 2.0):
        self.price = price

    async def get_market_data(self, token_address: str, network: str) -> Dict:
        return {'price': self.price}

    async def get_token_price(self, token_address: str, network: str) -> float:
        return self.price

    @staticmethod
    def is_dex_router(address: str, network: str) -> bool:
        return DexAnalyzer.is_dex_router(address, network)

    @staticmethod
    def identify_venue(address, network: str) -> str:
        return DexAnalyzer.identify_venue(address, network)


class FakeAlertSystem:
    def __init__(self):
        self.dispatched = []
        self.notified = []

    def dispatch(self, alert):
        self.dispatched.append(alert)

    def notify(self, event_type: str, network: str, data: Dict, priority: str = 'high'):
        self.notified.append((event_type, network, data, priority))

    async def drain(self):
        return None


class FakeRedis:
    """Cliente redis.asyncio em memória"""

    def __init__(self, fail_ping: bool = False):
        self.fail_ping = fail_ping
        self.store: Dict[str, str] = {}
        self.closed = False

    async def ping(self):
        if self.fail_ping:
            raise ConnectionError("redis unavailable")
        return True

    async def get(self, key: str):
        return self.store.get(key)

    async def set(self, key: str, value: str, ex=None):
        self.store[key] = value
        return True

    async def aclose(self):
        self.closed = True


def make_tx(tx_hash: str, sender: str, receiver: str, value: int = 1, timestamp: Optional[int] = None) -> Transaction:
    return Transaction(
        hash=tx_hash,
        from_address=sender,
        to_address=receiver,
        value=value,
        timestamp=int(time.time()) if timestamp is None else timestamp
    )


@pytest.fixture
def config(tmp_path, monkeypatch):
    for name in ('MORALIS_API_KEY', 'TELEGRAM_BOT_TOKEN', 'TELEGRAM_CHAT_ID',
                 'DISCORD_WEBHOOK_URL', 'CONFIG_ENCRYPTION_KEY'):
        monkeypatch.delenv(name, raising=False)
    return ModuleConfig.from_dict({
        'monitor': {
            'poll_interval': 0.05,
            'batch_size': 2,
            'batch_delay': 0,
            'request_timeout': 1,
            'mempool_enabled': False
        },
        'data_dir': str(tmp_path / 'token_data'),
        'save_analyses': False
    })


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def dex():
    return FakeDex()


@pytest.fixture
def alert_system():
    return FakeAlertSystem()


def make_alert(alert_id: str = "1-abcd", wallet_type: WalletType = WalletType.BUNDLE,
               usd_value: float = 100.0) -> SellAlert:
    return SellAlert(
        id=alert_id,
        wallet_address=WALLET_A,
        wallet_type=wallet_type,
        token_address=TOKEN,
        network='ethereum',
        amount_sold=50.0,
        usd_value=usd_value,
        previous_balance=1000.0,
        new_balance=950.0,
        change_percentage="5.00",
        timestamp=datetime(2025, 6, 10, 12, 0, tzinfo=pytz.utc),
        destination_venue="Uniswap V2",
        transaction_hash="0x" + "f" * 64,
        explorer_link="https://etherscan.io/tx/0x" + "f" * 64
    )
