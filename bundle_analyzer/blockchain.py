#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import json
import asyncio
from typing import Dict, List, Optional, Any, Callable
from collections import defaultdict
from web3 import Web3, AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware
from websockets import connect

from .config import ModuleConfig, ModuleStatus, NetworkConfig
from .errors import TransientNetworkError
from .utils import Utils, trace

# ABI mínima ERC-20 usada para metadados e saldos
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "name",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "totalSupply",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
]

POA_NETWORKS = ('bsc', 'polygon')

# ==============================================
# Módulo: Conexão Blockchain
# ==============================================

class BlockchainConnector:
    """Gerenciador de conexões RPC com failover entre endpoints"""

    def __init__(self, network: NetworkConfig, config: Optional[ModuleConfig] = None):
        self.network = network
        self.config = config or ModuleConfig()
        self.current_endpoint_idx = 0
        self.endpoint_failures = defaultdict(int)
        self.max_failures = max(1, len(network.rpc_endpoints)) * 2
        self.lock = asyncio.Lock()
        self._w3_pool: Dict[str, AsyncWeb3] = {}
        self._contract_cache = {}

    @property
    def available(self) -> bool:
        return bool(self.network.rpc_endpoints)

    @property
    def current_endpoint(self) -> Optional[str]:
        if not self.available:
            return None
        return self.network.rpc_endpoints[self.current_endpoint_idx]

    def _get_w3(self) -> AsyncWeb3:
        """Retorna (criando se necessário) o cliente do endpoint atual"""
        endpoint = self.current_endpoint
        if endpoint is None:
            raise TransientNetworkError(f"No RPC endpoint configured for {self.network.name}")

        w3 = self._w3_pool.get(endpoint)
        if w3 is None:
            w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
                endpoint,
                request_kwargs={'timeout': self.config.timeout}
            ))
            if self.network.name in POA_NETWORKS:
                w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            self._w3_pool[endpoint] = w3
        return w3

    async def _rotate_endpoint(self):
        """Rotaciona para o próximo endpoint RPC"""
        async with self.lock:
            if len(self.network.rpc_endpoints) > 1:
                self.current_endpoint_idx = (self.current_endpoint_idx + 1) % len(self.network.rpc_endpoints)
                self._contract_cache.clear()

    async def _handle_failure(self, endpoint: str):
        """Registra falha e rotaciona se necessário"""
        self.endpoint_failures[endpoint] += 1
        self.config.record_rpc_failure(self.network.name)

        if self.endpoint_failures[endpoint] > 3:
            self.endpoint_failures[endpoint] = 0
            await self._rotate_endpoint()

        if self.config.rpc_failures[self.network.name] > self.max_failures:
            self.config.status = ModuleStatus.DEGRADED

    async def _execute_with_retry(self, func: Callable, *args, retries: Optional[int] = None, **kwargs):
        """Executa uma chamada RPC com retry e failover.

        ``retries=1`` faz uma única tentativa (uso no ciclo de polling).
        Falhas viram ``TransientNetworkError``.
        """
        retries = retries or self.config.max_retries
        last_error = None
        for attempt in range(1, retries + 1):
            endpoint = self.current_endpoint
            try:
                return await func(*args, **kwargs)
            except TransientNetworkError:
                raise
            except Exception as e:
                last_error = e
                await self._handle_failure(endpoint)
                if attempt < retries:
                    delay = Utils.exponential_backoff(attempt, self.config.retry_delay)
                    await asyncio.sleep(delay)
                    await self._rotate_endpoint()

        trace.log_event(
            "BLOCKCHAIN_OPERATION",
            "ERROR",
            {
                "network": self.network.name,
                "operation": getattr(func, '__name__', str(func)),
                "error": str(last_error),
                "retries": retries
            }
        )
        raise TransientNetworkError(f"RPC call failed on {self.network.name}: {last_error}") from last_error

    def _token_contract(self, token_address: str) -> Any:
        address = Web3.to_checksum_address(token_address)
        contract = self._contract_cache.get(address)
        if contract is None:
            contract = self._get_w3().eth.contract(address=address, abi=ERC20_ABI)
            self._contract_cache[address] = contract
        return contract

    @trace.trace_operation
    async def is_connected(self) -> bool:
        """Verifica se a conexão está ativa"""
        if not self.available:
            return False
        try:
            return await self._get_w3().is_connected()
        except Exception as e:
            trace.log_event(
                "RPC_CONNECTION",
                "WARNING",
                {
                    "network": self.network.name,
                    "endpoint": self.current_endpoint,
                    "error": str(e)
                }
            )
            await self._handle_failure(self.current_endpoint)
            return False

    @trace.trace_operation
    async def get_erc20_metadata(self, token_address: str) -> Dict:
        """Lê name/symbol/decimals/totalSupply diretamente do contrato"""
        async def _get_metadata():
            contract = self._token_contract(token_address)
            return {
                'name': await contract.functions.name().call(),
                'symbol': await contract.functions.symbol().call(),
                'decimals': int(await contract.functions.decimals().call()),
                'total_supply': str(await contract.functions.totalSupply().call())
            }

        return await self._execute_with_retry(_get_metadata)

    async def get_token_balance_raw(self, token_address: str, wallet_address: str, retries: int = 1) -> int:
        """Saldo bruto (unidades mínimas) de uma carteira"""
        async def _balance_of():
            contract = self._token_contract(token_address)
            return int(await contract.functions.balanceOf(Web3.to_checksum_address(wallet_address)).call())

        return await self._execute_with_retry(_balance_of, retries=retries)

    async def get_decimals(self, token_address: str, retries: int = 1) -> int:
        async def _decimals():
            return int(await self._token_contract(token_address).functions.decimals().call())

        return await self._execute_with_retry(_decimals, retries=retries)

    async def get_transaction(self, tx_hash: str, retries: int = 1) -> Dict:
        """Obtém uma transação pelo hash"""
        async def _get_transaction():
            return await self._get_w3().eth.get_transaction(tx_hash)

        return await self._execute_with_retry(_get_transaction, retries=retries)

    def _ws_endpoint(self) -> Optional[str]:
        if self.network.ws_endpoint:
            return self.network.ws_endpoint
        if self.current_endpoint:
            return self.current_endpoint.replace('http', 'ws', 1)
        return None

    async def listen_for_pending_transactions(self, callback: Callable, stop_event: asyncio.Event):
        """Escuta transações pendentes até ``stop_event`` ser sinalizado.

        ``callback`` recebe o dicionário da transação; pode ser síncrono ou
        corrotina.
        """
        endpoint = self._ws_endpoint()
        if endpoint is None:
            trace.log_event("PENDING_TX_LISTENER", "WARNING", {
                "network": self.network.name,
                "error": "no websocket endpoint"
            })
            return

        while not stop_event.is_set():
            try:
                async with connect(endpoint) as ws:
                    await ws.send(json.dumps({
                        "id": 1,
                        "jsonrpc": "2.0",
                        "method": "eth_subscribe",
                        "params": ["newPendingTransactions"]
                    }))
                    await ws.recv()

                    while not stop_event.is_set():
                        try:
                            message = await asyncio.wait_for(ws.recv(), timeout=60)
                        except asyncio.TimeoutError:
                            continue
                        tx_hash = json.loads(message).get('params', {}).get('result')
                        if not tx_hash:
                            continue

                        try:
                            tx = await self.get_transaction(tx_hash)
                            result = callback(dict(tx))
                            if asyncio.iscoroutine(result):
                                await result
                        except Exception as e:
                            trace.log_event(
                                "PENDING_TX_PROCESSING",
                                "ERROR",
                                {
                                    "tx_hash": tx_hash,
                                    "error": str(e)
                                }
                            )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                trace.log_event(
                    "PENDING_TX_LISTENER",
                    "ERROR",
                    {
                        "endpoint": endpoint,
                        "error": str(e)
                    }
                )
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=5)
                except asyncio.TimeoutError:
                    pass
                await self._rotate_endpoint()
                endpoint = self._ws_endpoint()
