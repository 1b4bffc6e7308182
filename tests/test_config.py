#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import json

import pytest
from cryptography.fernet import Fernet

from bundle_analyzer import config as config_module
from bundle_analyzer.config import ModuleConfig, ModuleIdentity
from bundle_analyzer.errors import ConfigurationError

from conftest import FakeRedis


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ('MORALIS_API_KEY', 'TELEGRAM_BOT_TOKEN', 'CONFIG_ENCRYPTION_KEY', 'ETHERSCAN_API_KEY'):
        monkeypatch.delenv(name, raising=False)
    ModuleConfig.reset()
    yield
    ModuleConfig.reset()


def test_defaults_cover_supported_networks():
    config = ModuleConfig.from_dict({})

    assert set(config.networks) == {'ethereum', 'bsc', 'base', 'polygon', 'arbitrum'}
    assert config.get_network('bsc').moralis_chain == '0x38'
    assert config.classifier.team_threshold_percent == 0.1
    assert config.monitor.sell_threshold_percent == 1.0
    assert config.monitor.poll_interval == 20.0


def test_unknown_network_is_rejected():
    config = ModuleConfig.from_dict({})
    with pytest.raises(ConfigurationError):
        config.get_network('solana')


def test_disabled_network_is_rejected():
    config = ModuleConfig.from_dict({'networks': {'base': {'enabled': False}}})
    with pytest.raises(ConfigurationError):
        config.get_network('base')


def test_invalid_structure_is_rejected():
    with pytest.raises(ConfigurationError):
        ModuleConfig.from_dict({'networks': ['ethereum']})
    with pytest.raises(ConfigurationError):
        ModuleConfig.from_dict({'networks': {'ethereum': {'rpc_endpoints': 'https://rpc'}}})


def test_unknown_threshold_key_is_rejected():
    with pytest.raises(ConfigurationError):
        ModuleConfig.from_dict({'monitor': {'poll_every': 5}})


def test_new_network_requires_chain_id():
    with pytest.raises(ConfigurationError):
        ModuleConfig.from_dict({'networks': {'fantom': {'rpc_endpoints': []}}})


def test_secrets_from_environment(monkeypatch):
    monkeypatch.setenv('MORALIS_API_KEY', 'env-key')
    monkeypatch.setenv('ETHERSCAN_API_KEY', 'scan-env')
    config = ModuleConfig.from_dict({})

    assert config.providers.moralis_api_key == 'env-key'
    assert config.get_network('ethereum').scan_api_key == 'scan-env'


def test_encrypted_secret_is_decrypted(monkeypatch):
    key = Fernet.generate_key()
    monkeypatch.setenv('CONFIG_ENCRYPTION_KEY', key.decode())
    token = Fernet(key).encrypt(b'secret-bot-token').decode()

    config = ModuleConfig.from_dict({'alerts': {'telegram_bot_token': f'enc:{token}'}})

    assert config.alerts.telegram_bot_token == 'secret-bot-token'


def test_encrypted_secret_without_key_fails():
    with pytest.raises(ConfigurationError):
        ModuleConfig.from_dict({'alerts': {'telegram_bot_token': 'enc:abc'}})


def test_yaml_file_and_singleton(tmp_path):
    path = tmp_path / "module_config.yaml"
    path.write_text(
        "monitor:\n"
        "  poll_interval: 5\n"
        "  sell_threshold_percent: 2.5\n"
        "networks:\n"
        "  ethereum:\n"
        "    rpc_endpoints:\n"
        "      - https://rpc.example\n"
    )

    config = ModuleConfig(str(path))

    assert ModuleConfig() is config
    assert config.monitor.poll_interval == 5
    assert config.monitor.sell_threshold_percent == 2.5
    assert config.get_network('ethereum').rpc_endpoints == ['https://rpc.example']
    assert config.get_network('ethereum').chain_id == 1


def test_missing_file_uses_defaults(tmp_path):
    config = ModuleConfig(str(tmp_path / "missing.yaml"))
    assert config.monitor.batch_size == 3


async def test_memory_cache_expires():
    config = ModuleConfig.from_dict({})

    assert await config.set_cache('k', {'v': 1}) is True
    assert await config.get_cache('k') == {'v': 1}

    await config.set_cache('old', 1, ttl=-1)
    assert await config.get_cache('old') is None


async def test_redis_cache_when_configured(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(config_module.aioredis, 'from_url', lambda url: fake)
    config = ModuleConfig.from_dict({'cache': {'redis_url': 'redis://localhost:6379/0'}})

    assert await config.connect_redis() is True
    assert config.health_check()['details']['cache']['type'] == 'redis'

    await config.set_cache('k', {'v': 1})
    assert json.loads(fake.store['k']) == {'v': 1}
    assert await config.get_cache('k') == {'v': 1}
    assert config.cache == {}

    await config.close_redis()
    assert fake.closed
    assert config.redis_enabled is False


async def test_unreachable_redis_falls_back_to_memory(monkeypatch):
    monkeypatch.setattr(config_module.aioredis, 'from_url', lambda url: FakeRedis(fail_ping=True))
    config = ModuleConfig.from_dict({'cache': {'redis_url': 'redis://localhost:6379/0'}})

    assert await config.connect_redis() is False
    await config.set_cache('k', 1)
    assert 'k' in config.cache
    assert config.health_check()['details']['cache']['type'] == 'memory'


def test_health_check_reports_degraded_network():
    config = ModuleConfig.from_dict({})
    health = config.health_check()
    assert health['status'] == 'OK'
    assert health['module'] == ModuleIdentity.MODULE_ID

    for _ in range(3):
        config.record_rpc_failure('ethereum')

    health = config.health_check()
    assert health['status'] == 'DEGRADED'
    assert health['degraded_networks'] == ['ethereum']
