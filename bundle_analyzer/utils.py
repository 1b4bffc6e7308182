#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import os
import time
import json
import asyncio
import logging
import hashlib
import aiohttp
import numpy as np
from typing import Dict, List, Optional, Any
from datetime import datetime
from functools import wraps
from collections import deque
from web3 import Web3
import pytz

from .config import ModuleIdentity
from .errors import TransientNetworkError

# ==============================================
# Módulo: Validação
# ==============================================

class Validator:
    """Validador de entradas do módulo"""

    @staticmethod
    def validate_address(address: str) -> bool:
        """Valida um endereço EVM"""
        if not address or not isinstance(address, str):
            return False
        return Web3.is_address(address)

    @staticmethod
    def validate_config(config: Dict) -> bool:
        """Valida a estrutura de uma configuração do módulo"""
        if not isinstance(config, dict):
            return False

        networks = config.get('networks') or {}
        if not isinstance(networks, dict):
            return False

        for name, data in networks.items():
            if not isinstance(name, str):
                return False
            if data is None:
                continue
            if not isinstance(data, dict):
                return False
            if not isinstance(data.get('rpc_endpoints', []), list):
                return False
            if not all(isinstance(url, str) for url in data.get('rpc_endpoints', [])):
                return False

        for section in ('providers', 'alerts', 'classifier', 'risk', 'monitor', 'performance', 'cache'):
            if config.get(section) is not None and not isinstance(config[section], dict):
                return False

        return True

# ==============================================
# Módulo: Rastreamento e Logs
# ==============================================

class DebugTrace:
    """Sistema de rastreamento e logging estruturado"""

    def __init__(self):
        self.logger = logging.getLogger(ModuleIdentity.MODULE_ID)
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )

            # Handler para arquivo
            log_file = os.getenv('BUNDLE_ANALYZER_LOG_FILE', 'logs/bundle_analyzer.log')
            if log_file:
                log_dir = os.path.dirname(log_file)
                if log_dir:
                    os.makedirs(log_dir, exist_ok=True)
                file_handler = logging.FileHandler(log_file)
                file_handler.setFormatter(formatter)
                self.logger.addHandler(file_handler)

            # Handler para console
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

        self.event_buffer = deque(maxlen=1000)

    def log_event(self, event: str, status: str, details: Dict = None):
        """Registra um evento estruturado"""
        log_entry = {
            "timestamp": datetime.now(pytz.utc).isoformat(),
            "module": ModuleIdentity.MODULE_ID,
            "event": event,
            "status": status,
            "details": details or {}
        }

        self.event_buffer.append(log_entry)

        message = json.dumps(log_entry, default=str)
        if status == "ERROR":
            self.logger.error(message)
        elif status == "WARNING":
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def get_recent_events(self, limit: int = 100) -> List[Dict]:
        """Retorna os eventos recentes"""
        return list(self.event_buffer)[-limit:]

    def _record_operation(self, event_name: str, started: float, args, kwargs,
                          error: Optional[Exception] = None):
        details = {
            "duration": round(time.time() - started, 4),
            "args": str(args[1:])[:200],
            "kwargs": str(kwargs)[:200]
        }
        if error is not None:
            details["error"] = str(error) or type(error).__name__
        self.log_event(event_name, "ERROR" if error is not None else "SUCCESS", details)

    def trace_operation(self, func):
        """Decorator para rastrear operações (o primeiro argumento, self, não é registrado)"""
        event_name = f"{func.__module__}.{func.__name__}"

        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                started = time.time()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    self._record_operation(event_name, started, args, kwargs, e)
                    raise
                self._record_operation(event_name, started, args, kwargs)
                return result
            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            started = time.time()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                self._record_operation(event_name, started, args, kwargs, e)
                raise
            self._record_operation(event_name, started, args, kwargs)
            return result
        return sync_wrapper

# Inicializa o sistema de rastreamento
trace = DebugTrace()

# ==============================================
# Módulo: Utilitários
# ==============================================

class Utils:
    """Coleção de utilitários para o módulo"""

    @staticmethod
    def calculate_checksum(data: Dict) -> str:
        """Calcula um checksum SHA256 para os dados"""
        data_str = json.dumps(data, sort_keys=True, default=str)
        return f"SHA256:{hashlib.sha256(data_str.encode()).hexdigest()}"

    @staticmethod
    def generate_sclp_code(data: Dict) -> Dict:
        """Converte os dados para o formato simbólico SCLP"""
        return {
            "header": {
                "module": ModuleIdentity.MODULE_ID,
                "version": ModuleIdentity.VERSION,
                "contract": ModuleIdentity.SCLP_CONTRACT,
                "timestamp": datetime.now(pytz.utc).isoformat()
            },
            "payload": data,
            "validation": {
                "checksum": Utils.calculate_checksum(data),
                "valid": True
            }
        }

    @staticmethod
    def exponential_backoff(retries: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
        """Calcula um delay exponencial para retry"""
        delay = min(max_delay, base_delay * (2 ** (retries - 1)))
        return delay + np.random.uniform(0, 0.1 * delay)

    @staticmethod
    async def fetch_with_retry(session: aiohttp.ClientSession, url: str, retries: int = 3,
                               raise_on_failure: bool = False, **kwargs) -> Optional[Any]:
        """Fetch com retry exponencial.

        Com ``retries=1`` não há nova tentativa; falhas de rede viram
        ``None`` ou, com ``raise_on_failure``, ``TransientNetworkError``.
        """
        last_error = None
        for attempt in range(1, retries + 1):
            try:
                async with session.get(url, **kwargs) as response:
                    if response.status == 200:
                        return await response.json(content_type=None)
                    elif response.status >= 500 or response.status == 429:
                        raise aiohttp.ClientError(f"Server error: {response.status}")
                    else:
                        raise aiohttp.ClientError(f"Request failed: {response.status}")
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = e
                if attempt < retries:
                    delay = Utils.exponential_backoff(attempt)
                    await asyncio.sleep(delay)

        trace.log_event(
            "HTTP_REQUEST",
            "ERROR",
            {
                "url": url,
                "error": str(last_error) or type(last_error).__name__,
                "retries": retries
            }
        )
        if raise_on_failure:
            raise TransientNetworkError(f"Request to {url} failed: {last_error!r}") from last_error
        return None

    @staticmethod
    def short_address(address: str) -> str:
        if not address or len(address) < 12:
            return address or ""
        return f"{address[:6]}...{address[-4:]}"

    @staticmethod
    def to_human(raw: int, decimals: int) -> float:
        """Converte unidades mínimas para unidades legíveis"""
        return int(raw) / 10 ** int(decimals)

    @staticmethod
    def calculate_gini_coefficient(values: List[float]) -> float:
        """Calcula o coeficiente de Gini para distribuição"""
        values = sorted(values)
        n = len(values)
        if n == 0:
            return 0.0

        cum_values = np.cumsum(values).astype(float)
        if cum_values[-1] <= 0:
            return 0.0
        gini = (n + 1 - 2 * np.sum(cum_values) / cum_values[-1]) / n
        return float(gini)
