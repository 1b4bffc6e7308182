#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import os
import copy
import time
import json
import logging
import yaml
import redis.asyncio as aioredis
from cryptography.fernet import Fernet, InvalidToken
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from collections import defaultdict
import pytz

from .errors import ConfigurationError

# ==============================================
# Módulo: ModuleIdentity
# ==============================================

class ModuleIdentity:
    """Identidade e metadados do módulo conforme padrão SCLP"""

    MODULE_ID = "bundle_analyzer"
    VERSION = "1.0.0"
    DESCRIPTION = "Classificação de carteiras team/bundle e monitoramento de vendas em tempo real"
    AUTHOR = "Fábio Mota"
    LICENSE = "MIT"
    SCLP_CONTRACT = "SCLP-1.0"
    COMPATIBILITY = {
        "python": ">=3.10",
        "web3.py": ">=7.0.0",
        "aiohttp": ">=3.8"
    }

    @classmethod
    def get_identity(cls) -> Dict:
        """Retorna a identidade completa do módulo"""
        return {
            "module": cls.MODULE_ID,
            "version": cls.VERSION,
            "description": cls.DESCRIPTION,
            "author": cls.AUTHOR,
            "license": cls.LICENSE,
            "sclp_contract": cls.SCLP_CONTRACT,
            "compatibility": cls.COMPATIBILITY,
            "timestamp": datetime.now(pytz.utc).isoformat()
        }

# ==============================================
# Módulo: Configurações
# ==============================================

class ModuleStatus(Enum):
    OK = "OK"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"

@dataclass
class NetworkConfig:
    name: str
    chain_id: int
    scan_api: Optional[str] = None
    scan_api_key: Optional[str] = None
    explorer_url: Optional[str] = None
    dexscreener_id: Optional[str] = None
    rpc_endpoints: List[str] = field(default_factory=list)
    ws_endpoint: Optional[str] = None
    enabled: bool = True

    @property
    def moralis_chain(self) -> str:
        return hex(self.chain_id)

@dataclass
class ProviderConfig:
    moralis_api_key: Optional[str] = None
    moralis_url: str = "https://deep-index.moralis.io/api/v2"
    dexscreener_url: str = "https://api.dexscreener.com/latest"

@dataclass
class AlertConfig:
    discord_webhook: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    notify_high_risk: bool = True
    email_alerts: Dict = field(default_factory=lambda: {
        'enabled': False,
        'smtp_server': 'smtp.gmail.com',
        'smtp_port': 587,
        'email_from': '',
        'email_password': '',
        'email_to': ''
    })

@dataclass
class ClassifierThresholds:
    # 0.1% é sensível de propósito; ajuste por token
    team_threshold_percent: float = 0.1
    high_risk_team_percent: float = 10.0
    quick_flip_window_seconds: int = 86400
    low_activity_tx_count: int = 10
    history_limit: int = 100
    max_concurrency: int = 3
    holder_limit: int = 100

@dataclass
class RiskThresholds:
    team_high: float = 20.0
    bundle_high: float = 15.0
    medium: float = 10.0

@dataclass
class MonitorConfig:
    poll_interval: float = 20.0
    batch_size: int = 3
    batch_delay: float = 2.0
    sell_threshold_percent: float = 1.0
    request_timeout: float = 10.0
    sell_tx_lookback_seconds: int = 300
    sell_pressure_lookback_seconds: int = 86400
    track_sell_pressure: bool = True
    coordinated_window_seconds: int = 300
    coordinated_min_wallets: int = 3
    mempool_enabled: bool = False

DEFAULT_NETWORKS = {
    'ethereum': {
        'chain_id': 1,
        'scan_api': 'https://api.etherscan.io/api',
        'explorer_url': 'https://etherscan.io',
        'dexscreener_id': 'ethereum',
        'api_key_env': 'ETHERSCAN_API_KEY'
    },
    'bsc': {
        'chain_id': 56,
        'scan_api': 'https://api.bscscan.com/api',
        'explorer_url': 'https://bscscan.com',
        'dexscreener_id': 'bsc',
        'api_key_env': 'BSCSCAN_API_KEY'
    },
    'base': {
        'chain_id': 8453,
        'scan_api': 'https://api.basescan.org/api',
        'explorer_url': 'https://basescan.org',
        'dexscreener_id': 'base',
        'api_key_env': 'BASESCAN_API_KEY'
    },
    'polygon': {
        'chain_id': 137,
        'scan_api': 'https://api.polygonscan.com/api',
        'explorer_url': 'https://polygonscan.com',
        'dexscreener_id': 'polygon',
        'api_key_env': 'POLYGONSCAN_API_KEY'
    },
    'arbitrum': {
        'chain_id': 42161,
        'scan_api': 'https://api.arbiscan.io/api',
        'explorer_url': 'https://arbiscan.io',
        'dexscreener_id': 'arbitrum',
        'api_key_env': 'ARBISCAN_API_KEY'
    }
}

DEFAULT_CONFIG_PATH = "bundle_analyzer/module_config.yaml"

class ModuleConfig:
    """Configuração centralizada do módulo com carregamento de YAML"""

    _instance = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._initialize(config_path=config_path)
                    cls._instance = instance
        return cls._instance

    @classmethod
    def from_dict(cls, data: Dict) -> "ModuleConfig":
        """Cria uma instância isolada (fora do singleton) a partir de um dicionário"""
        instance = object.__new__(cls)
        instance._initialize(data=data)
        return instance

    @classmethod
    def reset(cls):
        with cls._lock:
            cls._instance = None

    def _initialize(self, config_path: Optional[str] = None, data: Optional[Dict] = None):
        self.config_path = config_path or os.getenv('BUNDLE_ANALYZER_CONFIG', DEFAULT_CONFIG_PATH)
        self.fernet = self._build_fernet()
        if data is None:
            data = self._read_config_file()
        self._load_config(data)
        self.status = ModuleStatus.OK
        self.last_health_check = datetime.now(pytz.utc)
        self.rpc_failures = defaultdict(int)
        self.cache = {}
        self.cache_lock = Lock()
        self.redis_client = None
        self.redis_enabled = False

    def _build_fernet(self) -> Optional[Fernet]:
        key = os.getenv('CONFIG_ENCRYPTION_KEY')
        if not key:
            return None
        try:
            return Fernet(key.encode())
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid CONFIG_ENCRYPTION_KEY: {e}") from e

    def _secret(self, value: Optional[str], env_name: Optional[str] = None) -> Optional[str]:
        """Resolve um segredo: YAML (opcionalmente cifrado com ``enc:``) ou variável de ambiente"""
        if not value and env_name:
            value = os.getenv(env_name)
        if not value or not isinstance(value, str):
            return value
        if value.startswith('enc:'):
            if self.fernet is None:
                raise ConfigurationError("Encrypted secret found but CONFIG_ENCRYPTION_KEY is not set")
            try:
                return self.fernet.decrypt(value[4:].encode()).decode()
            except InvalidToken as e:
                raise ConfigurationError("Failed to decrypt configuration secret") from e
        return value

    def _read_config_file(self) -> Dict:
        if not os.path.exists(self.config_path):
            logging.warning(f"Config file {self.config_path} not found, using defaults")
            return {}
        try:
            with open(self.config_path, 'r') as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration: {str(e)}") from e

    def _load_config(self, config_data: Dict):
        from .utils import Validator

        if not Validator.validate_config(config_data):
            raise ConfigurationError("Invalid configuration structure")

        # Redes: padrões embutidos sobrescritos pelo YAML
        self.networks = {}
        networks_data = copy.deepcopy(DEFAULT_NETWORKS)
        for name, data in (config_data.get('networks') or {}).items():
            networks_data.setdefault(name, {}).update(data or {})

        for name, data in networks_data.items():
            if 'chain_id' not in data:
                raise ConfigurationError(f"Network {name} has no chain_id")
            self.networks[name] = NetworkConfig(
                name=name,
                chain_id=int(data['chain_id']),
                scan_api=data.get('scan_api'),
                scan_api_key=self._secret(data.get('scan_api_key'), data.get('api_key_env')),
                explorer_url=data.get('explorer_url'),
                dexscreener_id=data.get('dexscreener_id', name),
                rpc_endpoints=data.get('rpc_endpoints', []),
                ws_endpoint=data.get('ws_endpoint'),
                enabled=data.get('enabled', True)
            )

        providers = config_data.get('providers') or {}
        self.providers = ProviderConfig(
            moralis_api_key=self._secret(providers.get('moralis_api_key'), 'MORALIS_API_KEY'),
            moralis_url=providers.get('moralis_url', ProviderConfig.moralis_url),
            dexscreener_url=providers.get('dexscreener_url', ProviderConfig.dexscreener_url)
        )

        # Configurações de alerta
        alerts = config_data.get('alerts') or {}
        default_email = AlertConfig().email_alerts
        default_email.update(alerts.get('email_alerts') or {})
        default_email['email_password'] = self._secret(default_email.get('email_password'))
        self.alerts = AlertConfig(
            discord_webhook=self._secret(alerts.get('discord_webhook'), 'DISCORD_WEBHOOK_URL'),
            telegram_bot_token=self._secret(alerts.get('telegram_bot_token'), 'TELEGRAM_BOT_TOKEN'),
            telegram_chat_id=self._secret(alerts.get('telegram_chat_id'), 'TELEGRAM_CHAT_ID'),
            notify_high_risk=alerts.get('notify_high_risk', True),
            email_alerts=default_email
        )

        try:
            self.classifier = ClassifierThresholds(**(config_data.get('classifier') or {}))
            self.risk = RiskThresholds(**(config_data.get('risk') or {}))
            self.monitor = MonitorConfig(**(config_data.get('monitor') or {}))
        except TypeError as e:
            raise ConfigurationError(f"Unknown configuration key: {e}") from e

        # Caminhos de dados
        self.data_dir = config_data.get('data_dir', 'token_data')
        self.save_analyses = config_data.get('save_analyses', True)

        # Configurações de desempenho
        perf = config_data.get('performance') or {}
        self.max_retries = perf.get('max_retries', 3)
        self.retry_delay = perf.get('retry_delay', 1.0)
        self.timeout = perf.get('timeout', 30.0)
        self.cache_ttl = perf.get('cache_ttl', 3600)
        self.price_cache_ttl = perf.get('price_cache_ttl', 30)

        self.redis_url = (config_data.get('cache') or {}).get('redis_url')

    def get_network(self, name: str) -> NetworkConfig:
        network = self.networks.get(name)
        if network is None or not network.enabled:
            raise ConfigurationError(f"Network {name} is not configured or enabled")
        return network

    async def connect_redis(self):
        """Conecta ao Redis se configurado"""
        try:
            if not self.redis_enabled and self.redis_url:
                self.redis_client = aioredis.from_url(self.redis_url)
                await self.redis_client.ping()
                self.redis_enabled = True
                return True
        except Exception as e:
            logging.warning(f"Failed to connect to Redis: {str(e)}")
            self.redis_client = None
            self.redis_enabled = False
        return False

    async def close_redis(self):
        client, self.redis_client = self.redis_client, None
        self.redis_enabled = False
        if client is not None:
            await client.aclose()

    async def get_cache(self, key: str) -> Optional[Any]:
        """Obtém um valor do cache"""
        try:
            if self.redis_enabled and self.redis_client:
                cached = await self.redis_client.get(key)
                if cached:
                    return json.loads(cached)
            else:
                with self.cache_lock:
                    entry = self.cache.get(key)
                    if entry is not None:
                        if entry['expiry'] > time.time():
                            return entry['value']
                        del self.cache[key]
        except Exception as e:
            logging.warning(f"Cache get failed: {str(e)}")
        return None

    async def set_cache(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Define um valor no cache"""
        ttl = ttl or self.cache_ttl
        try:
            if self.redis_enabled and self.redis_client:
                await self.redis_client.set(key, json.dumps(value), ex=ttl)
                return True
            else:
                with self.cache_lock:
                    self.cache[key] = {
                        'value': value,
                        'expiry': time.time() + ttl
                    }
                return True
        except Exception as e:
            logging.warning(f"Cache set failed: {str(e)}")
            return False

    def record_rpc_failure(self, network: str):
        self.rpc_failures[network] += 1

    def health_check(self) -> Dict:
        """Verifica a saúde do módulo"""
        now = datetime.now(pytz.utc)
        health = {
            "module": ModuleIdentity.MODULE_ID,
            "version": ModuleIdentity.VERSION,
            "status": self.status.value,
            "timestamp": now.isoformat(),
            "uptime": (now - self.last_health_check).total_seconds(),
            "details": {
                "networks": {name: {
                    "enabled": cfg.enabled,
                    "rpc_endpoints": len(cfg.rpc_endpoints),
                    "scan_api": bool(cfg.scan_api_key)
                } for name, cfg in self.networks.items()},
                "alerts": {
                    "discord": bool(self.alerts.discord_webhook),
                    "telegram": bool(self.alerts.telegram_bot_token and self.alerts.telegram_chat_id),
                    "email": bool(self.alerts.email_alerts.get('enabled'))
                },
                "cache": {
                    "enabled": True,
                    "type": "redis" if self.redis_enabled else "memory",
                    "size": len(self.cache) if not self.redis_enabled else "unknown"
                }
            }
        }

        # Verificar status dos RPCs
        degraded = []
        for name, failures in self.rpc_failures.items():
            endpoints = len(self.networks[name].rpc_endpoints) if name in self.networks else 0
            if failures > max(1, endpoints) * 2:
                degraded.append(name)

        if degraded:
            self.status = ModuleStatus.DEGRADED
            health["status"] = self.status.value
            health["degraded_networks"] = degraded

        return health
