#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import aiohttp
from typing import Dict, List, Optional

from .config import ModuleConfig, NetworkConfig
from .errors import DegradedLookupError, TransientNetworkError
from .models import Deployer, Transaction
from .utils import Utils, trace

NO_TRANSACTIONS = "No transactions found"

# ==============================================
# Módulo: Exploradores (Etherscan e derivados)
# ==============================================

class ScanClient:
    """Cliente da API estilo Etherscan de uma rede.

    Os métodos públicos nunca propagam falhas de rede: devolvem ``None``
    ou lista vazia e registram o evento.
    """

    def __init__(self, network: NetworkConfig, config: Optional[ModuleConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.network = network
        self.config = config or ModuleConfig()
        self._session = session
        self._owns_session = session is None

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

    async def _query(self, params: Dict, retries: int = 1) -> List[Dict]:
        """Executa uma consulta e devolve ``result``.

        Levanta ``DegradedLookupError`` para respostas com ``status != "1"``
        e ``TransientNetworkError`` para falhas de transporte.
        """
        if not self.network.scan_api:
            raise DegradedLookupError(f"No explorer API configured for {self.network.name}")

        query = dict(params)
        if self.network.scan_api_key:
            query['apikey'] = self.network.scan_api_key

        data = await Utils.fetch_with_retry(
            self._get_session(),
            self.network.scan_api,
            retries=retries,
            raise_on_failure=True,
            params=query
        )

        if not isinstance(data, dict):
            raise DegradedLookupError("Malformed explorer response")
        if str(data.get('status')) != '1':
            message = data.get('message') or ''
            if NO_TRANSACTIONS.lower() in message.lower():
                return []
            raise DegradedLookupError(f"{message}: {data.get('result')}")

        result = data.get('result')
        return result if isinstance(result, list) else []

    @staticmethod
    def _to_transaction(row: Dict) -> Optional[Transaction]:
        try:
            return Transaction(
                hash=row.get('hash', ''),
                from_address=(row.get('from') or '').lower(),
                to_address=(row.get('to') or '').lower(),
                value=int(row.get('value') or 0),
                timestamp=int(row.get('timeStamp') or 0)
            )
        except (TypeError, ValueError):
            return None

    @trace.trace_operation
    async def get_contract_creation(self, contract_address: str) -> Optional[Deployer]:
        """Resolve o implementador do contrato; ``None`` em qualquer falha"""
        try:
            result = await self._query({
                'module': 'contract',
                'action': 'getcontractcreation',
                'contractaddresses': contract_address
            })
        except (DegradedLookupError, TransientNetworkError) as e:
            trace.log_event("DEPLOYER_FETCH", "WARNING", {
                "network": self.network.name,
                "contract": contract_address,
                "error": str(e)
            })
            return None

        if not result or not result[0].get('contractCreator'):
            trace.log_event("DEPLOYER_FETCH", "INFO", {
                "network": self.network.name,
                "contract": contract_address,
                "result": "not available"
            })
            return None

        row = result[0]
        block_number = row.get('blockNumber')
        return Deployer(
            address=row['contractCreator'].lower(),
            tx_hash=row.get('txHash'),
            block_number=int(block_number) if block_number else None
        )

    async def get_transactions(self, address: str, limit: int = 100, sort: str = 'desc') -> List[Transaction]:
        """Histórico de transações normais de uma carteira (``txlist``)"""
        try:
            rows = await self._query({
                'module': 'account',
                'action': 'txlist',
                'address': address,
                'startblock': 0,
                'endblock': 99999999,
                'page': 1,
                'offset': limit,
                'sort': sort
            })
        except (DegradedLookupError, TransientNetworkError) as e:
            trace.log_event("TX_HISTORY_FETCH", "WARNING", {
                "network": self.network.name,
                "address": address,
                "error": str(e)
            })
            return []

        return [tx for tx in (self._to_transaction(row) for row in rows) if tx is not None]

    async def get_token_transfers(self, contract_address: Optional[str] = None,
                                  address: Optional[str] = None,
                                  limit: int = 1000, sort: str = 'desc',
                                  raise_on_failure: bool = False) -> List[Transaction]:
        """Transferências ERC-20 (``tokentx``) por contrato e/ou carteira"""
        params = {
            'module': 'account',
            'action': 'tokentx',
            'page': 1,
            'offset': limit,
            'sort': sort
        }
        if contract_address:
            params['contractaddress'] = contract_address
        if address:
            params['address'] = address

        try:
            rows = await self._query(params)
        except (DegradedLookupError, TransientNetworkError) as e:
            trace.log_event("TOKEN_TRANSFER_FETCH", "WARNING", {
                "network": self.network.name,
                "contract": contract_address,
                "address": address,
                "error": str(e)
            })
            if raise_on_failure:
                raise
            return []

        return [tx for tx in (self._to_transaction(row) for row in rows) if tx is not None]

    async def was_funded_by(self, wallet_address: str, funder_address: str, limit: int = 100) -> bool:
        """Indica se a carteira recebeu transação direta de ``funder_address``"""
        transactions = await self.get_transactions(wallet_address, limit=limit, sort='asc')
        funder = funder_address.lower()
        return any(
            tx.from_address == funder and tx.is_incoming(wallet_address)
            for tx in transactions
        )

