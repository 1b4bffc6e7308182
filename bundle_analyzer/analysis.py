#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import time
import aiohttp
from typing import Dict, List, Optional, Any
from collections import defaultdict

from .config import ModuleConfig
from .blockchain import BlockchainConnector
from .errors import DegradedLookupError, FatalAnalysisError, TransientNetworkError
from .explorer import ScanClient
from .models import Deployer, Holder, TokenMetadata, Transaction
from .utils import Utils, Validator, trace

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'

DEX_ROUTERS = {
    'ethereum': {
        '0x7a250d5630b4cf539739df2c5dacb4c659f2488d': 'Uniswap V2',
        '0xe592427a0aece92de3edee1f18e0157c05861564': 'Uniswap V3',
        '0xd9e1ce17f2641f24ae83637ab66a2cca9c378b9f': 'SushiSwap'
    },
    'bsc': {
        '0x10ed43c718714eb63d5aa57b78b54704e256024e': 'PancakeSwap'
    },
    'polygon': {
        '0xa5e0829caced8ffdd4de3c43696c57f7d7a678ff': 'QuickSwap',
        '0x1b02da8cb0d097eb8d57a175b88c7d8b47997506': 'SushiSwap'
    },
    'arbitrum': {
        '0xe592427a0aece92de3edee1f18e0157c05861564': 'Uniswap V3',
        '0x1b02da8cb0d097eb8d57a175b88c7d8b47997506': 'SushiSwap'
    },
    'base': {}
}

# ==============================================
# Módulo: Sessão HTTP compartilhada
# ==============================================

class HttpClientMixin:
    """Sessão aiohttp criada sob demanda e fechada por quem a criou"""

    _session: Optional[aiohttp.ClientSession] = None
    _owns_session: bool = True

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

# ==============================================
# Módulo: Análise de Tokens
# ==============================================

class TokenAnalyzer(HttpClientMixin):
    """Metadados, holders, saldos e histórico de carteiras por rede"""

    def __init__(self, config: Optional[ModuleConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        self.config = config or ModuleConfig()
        self._session = session
        self._owns_session = session is None
        self._scan_clients: Dict[str, ScanClient] = {}
        self._connectors: Dict[str, BlockchainConnector] = {}

    def scan_client(self, network: str) -> ScanClient:
        client = self._scan_clients.get(network)
        if client is None:
            client = ScanClient(self.config.get_network(network), self.config, self._get_session())
            self._scan_clients[network] = client
        return client

    def connector(self, network: str) -> Optional[BlockchainConnector]:
        """Conector RPC da rede, ou ``None`` sem endpoints configurados"""
        if network not in self._connectors:
            network_config = self.config.get_network(network)
            self._connectors[network] = BlockchainConnector(network_config, self.config) if network_config.rpc_endpoints else None
        return self._connectors[network]

    async def _moralis_get(self, path: str, params: List, retries: Optional[int] = None) -> Any:
        if not self.config.providers.moralis_api_key:
            raise DegradedLookupError("Moralis API key not configured")

        return await Utils.fetch_with_retry(
            self._get_session(),
            f"{self.config.providers.moralis_url}{path}",
            retries=retries or self.config.max_retries,
            raise_on_failure=True,
            params=params,
            headers={'X-API-Key': self.config.providers.moralis_api_key, 'accept': 'application/json'}
        )

    # ------------------------------------------
    # Metadados
    # ------------------------------------------

    @trace.trace_operation
    async def get_token_metadata(self, contract_address: str, network: str) -> TokenMetadata:
        """Metadados do token; falha aqui interrompe a análise"""
        contract_address = contract_address.lower()
        cache_key = f"{network}_{contract_address}_metadata"
        cached = await self.config.get_cache(cache_key)
        if cached:
            return TokenMetadata(**cached)

        chain = self.config.get_network(network).moralis_chain
        metadata = None
        try:
            data = await self._moralis_get('/erc20/metadata', [('chain', chain), ('addresses', contract_address)])
            if isinstance(data, list) and data:
                row = data[0]
                total_supply = row.get('total_supply')
                if total_supply is None:
                    total_supply = await self._onchain_total_supply(contract_address, network)
                metadata = TokenMetadata(
                    address=contract_address,
                    name=row.get('name') or 'Unknown',
                    symbol=row.get('symbol') or 'UNK',
                    decimals=int(row.get('decimals') or 18),
                    total_supply=str(total_supply or '0')
                )
        except (DegradedLookupError, TransientNetworkError, TypeError, ValueError) as e:
            trace.log_event("METADATA_FETCH", "WARNING", {
                "source": "moralis",
                "network": network,
                "contract": contract_address,
                "error": str(e)
            })

        if metadata is None:
            metadata = await self._onchain_metadata(contract_address, network)

        if metadata is None:
            raise FatalAnalysisError("metadata", f"Token metadata not found for {contract_address} on {network}")

        await self.config.set_cache(cache_key, metadata.to_dict())
        return metadata

    async def _onchain_total_supply(self, contract_address: str, network: str) -> Optional[str]:
        metadata = await self._onchain_metadata(contract_address, network)
        return metadata.total_supply if metadata else None

    async def _onchain_metadata(self, contract_address: str, network: str) -> Optional[TokenMetadata]:
        connector = self.connector(network)
        if connector is None:
            return None
        try:
            data = await connector.get_erc20_metadata(contract_address)
        except TransientNetworkError as e:
            trace.log_event("METADATA_FETCH", "WARNING", {
                "source": "rpc",
                "network": network,
                "contract": contract_address,
                "error": str(e)
            })
            return None
        return TokenMetadata(address=contract_address, **data)

    # ------------------------------------------
    # Holders
    # ------------------------------------------

    @trace.trace_operation
    async def get_top_holders(self, contract_address: str, network: str, metadata: TokenMetadata,
                              limit: Optional[int] = None) -> List[Holder]:
        """Maiores holders, ordenados por saldo.

        Sem resposta do provedor principal, aproxima pelos últimos
        ``tokentx`` do explorador.
        """
        limit = limit or self.config.classifier.holder_limit
        chain = self.config.get_network(network).moralis_chain
        try:
            data = await self._moralis_get(
                f'/erc20/{contract_address}/owners',
                [('chain', chain), ('limit', str(limit)), ('order', 'DESC')]
            )
            rows = (data or {}).get('result') or []
            if not rows:
                raise DegradedLookupError("No holders data returned")
            return self.normalize_holders(rows, metadata)[:limit]
        except (DegradedLookupError, TransientNetworkError, AttributeError) as e:
            trace.log_event("HOLDER_FETCH", "WARNING", {
                "source": "moralis",
                "network": network,
                "contract": contract_address,
                "error": str(e),
                "fallback": "tokentx"
            })

        try:
            transfers = await self.scan_client(network).get_token_transfers(
                contract_address=contract_address, limit=1000, sort='desc', raise_on_failure=True
            )
        except (DegradedLookupError, TransientNetworkError) as e:
            raise FatalAnalysisError("holders", f"Could not load holders for {contract_address}: {e}") from e

        return self.holders_from_transfers(transfers, metadata, limit)

    @staticmethod
    def normalize_holders(rows: List[Dict], metadata: TokenMetadata) -> List[Holder]:
        holders = []
        for row in rows:
            address = row.get('owner_address') or row.get('address')
            if not address:
                continue
            holders.append(Holder.from_raw(address, int(row.get('balance') or 0), metadata))
        holders.sort(key=lambda h: h.balance_raw, reverse=True)
        return holders

    @staticmethod
    def holders_from_transfers(transfers: List[Transaction], metadata: TokenMetadata, limit: int = 100) -> List[Holder]:
        """Soma as entradas por destinatário, sem descontar saídas"""
        received = defaultdict(int)
        for tx in transfers:
            if tx.to_address and tx.to_address != ZERO_ADDRESS:
                received[tx.to_address] += tx.value

        ranked = sorted(received.items(), key=lambda item: item[1], reverse=True)[:limit]
        return [Holder.from_raw(address, value, metadata) for address, value in ranked]

    @staticmethod
    def holder_distribution(holders: List[Holder]) -> Dict:
        """Calcula a distribuição de holders"""
        if not holders:
            return {'total_holders': 0, 'top10_percent': 0.0, 'gini_coefficient': 0.0}

        ranked = sorted(holders, key=lambda h: h.balance, reverse=True)
        return {
            'total_holders': len(holders),
            'top10_percent': float(sum(h.percentage for h in ranked[:10])),
            'gini_coefficient': Utils.calculate_gini_coefficient([h.balance for h in holders])
        }

    # ------------------------------------------
    # Implementador e histórico
    # ------------------------------------------

    async def get_contract_deployer(self, contract_address: str, network: str) -> Optional[Deployer]:
        try:
            return await self.scan_client(network).get_contract_creation(contract_address)
        except Exception as e:
            trace.log_event("DEPLOYER_FETCH", "WARNING", {
                "network": network,
                "contract": contract_address,
                "error": str(e)
            })
            return None

    async def get_transactions(self, address: str, network: str, limit: int = 100) -> List[Transaction]:
        return await self.scan_client(network).get_transactions(address, limit=limit)

    async def get_token_transfers(self, address: str, network: str, contract_address: Optional[str] = None,
                                  limit: int = 100) -> List[Transaction]:
        return await self.scan_client(network).get_token_transfers(
            contract_address=contract_address, address=address, limit=limit
        )

    async def was_funded_by(self, wallet_address: str, funder_address: str, network: str) -> bool:
        return await self.scan_client(network).was_funded_by(
            wallet_address, funder_address, limit=self.config.classifier.history_limit
        )

    # ------------------------------------------
    # Saldos
    # ------------------------------------------

    async def get_token_balance(self, wallet_address: str, token_address: str, network: str) -> Optional[float]:
        """Saldo em unidades legíveis; ``None`` quando nenhuma fonte respondeu"""
        token_address = token_address.lower()
        chain = self.config.get_network(network).moralis_chain
        try:
            rows = await self._moralis_get(
                f'/{wallet_address}/erc20',
                [('chain', chain), ('token_addresses', token_address)],
                retries=1
            )
            if isinstance(rows, list):
                for row in rows:
                    if (row.get('token_address') or '').lower() == token_address:
                        return Utils.to_human(int(row.get('balance') or 0), int(row.get('decimals') or 18))
                return 0.0
        except (DegradedLookupError, TransientNetworkError, TypeError, ValueError) as e:
            trace.log_event("BALANCE_FETCH", "WARNING", {
                "source": "moralis",
                "network": network,
                "wallet": wallet_address,
                "error": str(e)
            })

        connector = self.connector(network)
        if connector is None:
            return None
        try:
            raw = await connector.get_token_balance_raw(token_address, wallet_address)
            decimals = await connector.get_decimals(token_address)
            return Utils.to_human(raw, decimals)
        except TransientNetworkError as e:
            trace.log_event("BALANCE_FETCH", "WARNING", {
                "source": "rpc",
                "network": network,
                "wallet": wallet_address,
                "error": str(e)
            })
            return None

    async def close(self):
        await super().close()
        for client in self._scan_clients.values():
            await client.close()

# ==============================================
# Módulo: Dados de Mercado (DEX)
# ==============================================

class DexAnalyzer(HttpClientMixin):
    """Preço, liquidez e identificação de roteadores de DEX"""

    def __init__(self, config: Optional[ModuleConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        self.config = config or ModuleConfig()
        self._session = session
        self._owns_session = session is None

    @staticmethod
    def select_main_pair(pairs: List[Dict], chain_id: Optional[str] = None) -> Optional[Dict]:
        """Par da rede com maior liquidez em USD"""
        candidates = [p for p in pairs if not chain_id or p.get('chainId') == chain_id]
        if not candidates:
            return None
        return max(candidates, key=lambda p: float((p.get('liquidity') or {}).get('usd') or 0))

    @trace.trace_operation
    async def get_market_data(self, token_address: str, network: str) -> Dict:
        """Dados de mercado do par principal; ``{}`` sem dados"""
        token_address = token_address.lower()
        cache_key = f"{network}_{token_address}_market"
        cached = await self.config.get_cache(cache_key)
        if cached:
            return cached

        try:
            data = await Utils.fetch_with_retry(
                self._get_session(),
                f"{self.config.providers.dexscreener_url}/dex/tokens/{token_address}",
                retries=1,
                raise_on_failure=True
            )
        except TransientNetworkError as e:
            trace.log_event("PRICE_FETCH", "WARNING", {
                "network": network,
                "token": token_address,
                "error": str(e)
            })
            return {}

        pairs = (data or {}).get('pairs') or []
        pair = self.select_main_pair(pairs, self.config.get_network(network).dexscreener_id)
        if pair is None:
            trace.log_event("PRICE_FETCH", "INFO", {
                "network": network,
                "token": token_address,
                "result": "no trading pairs"
            })
            return {}

        market = {
            'price': float(pair.get('priceUsd') or 0),
            'price_change_24h': float((pair.get('priceChange') or {}).get('h24') or 0),
            'volume_24h': float((pair.get('volume') or {}).get('h24') or 0),
            'liquidity_usd': float((pair.get('liquidity') or {}).get('usd') or 0),
            'fdv': float(pair.get('fdv') or 0),
            'market_cap': float(pair.get('marketCap') or 0),
            'dex_id': pair.get('dexId'),
            'pair_address': pair.get('pairAddress'),
            'updated_at': int(time.time())
        }
        await self.config.set_cache(cache_key, market, ttl=self.config.price_cache_ttl)
        return market

    async def get_token_price(self, token_address: str, network: str) -> float:
        """Preço em USD; 0.0 quando indisponível"""
        market = await self.get_market_data(token_address, network)
        return float(market.get('price') or 0.0)

    @staticmethod
    def is_dex_router(address: str, network: str) -> bool:
        return bool(address) and address.lower() in DEX_ROUTERS.get(network, {})

    @staticmethod
    def identify_venue(address: Optional[str], network: str) -> str:
        """Nome da DEX para um roteador conhecido, senão o endereço abreviado"""
        if not address or not Validator.validate_address(address):
            return "Unknown"
        return DEX_ROUTERS.get(network, {}).get(address.lower(), Utils.short_address(address))
