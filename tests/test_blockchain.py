#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import pytest

from bundle_analyzer.blockchain import BlockchainConnector
from bundle_analyzer.config import ModuleConfig
from bundle_analyzer.errors import TransientNetworkError


@pytest.fixture
def rpc_config(tmp_path):
    return ModuleConfig.from_dict({
        'networks': {'bsc': {'rpc_endpoints': ['https://rpc-a.example', 'https://rpc-b.example']}},
        'performance': {'max_retries': 2, 'retry_delay': 0},
        'data_dir': str(tmp_path)
    })


async def test_retry_rotates_endpoint(rpc_config):
    connector = BlockchainConnector(rpc_config.get_network('bsc'), rpc_config)
    calls = []

    async def flaky():
        calls.append(connector.current_endpoint)
        if len(calls) == 1:
            raise ConnectionError("endpoint down")
        return 42

    assert await connector._execute_with_retry(flaky) == 42
    assert calls == ['https://rpc-a.example', 'https://rpc-b.example']
    assert rpc_config.rpc_failures['bsc'] == 1


async def test_exhausted_retries_raise_transient_error(rpc_config):
    connector = BlockchainConnector(rpc_config.get_network('bsc'), rpc_config)

    async def broken():
        raise ConnectionError("endpoint down")

    with pytest.raises(TransientNetworkError):
        await connector._execute_with_retry(broken, retries=1)


async def test_connector_without_endpoints(config):
    connector = BlockchainConnector(config.get_network('ethereum'), config)
    assert connector.available is False
    assert await connector.is_connected() is False
    with pytest.raises(TransientNetworkError):
        connector._get_w3()


def test_websocket_endpoint_derived_from_rpc(rpc_config):
    connector = BlockchainConnector(rpc_config.get_network('bsc'), rpc_config)
    assert connector._ws_endpoint() == 'wss://rpc-a.example'
