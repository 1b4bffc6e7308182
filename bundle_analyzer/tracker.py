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
from typing import Dict, Optional
from datetime import datetime
import pytz

from .config import ModuleConfig, ModuleIdentity
from .alerts import AlertStore, AlertSystem
from .analysis import DexAnalyzer, TokenAnalyzer
from .classifier import WalletClassifier
from .errors import ConfigurationError, FatalAnalysisError
from .models import AnalysisResult, RiskLevel
from .monitor import RealTimeMonitor
from .utils import Validator, trace

# ==============================================
# Módulo: Bundle Tracker
# ==============================================

class BundleTracker:
    """Orquestra análise de holders e monitoramento de uma rede"""

    def __init__(self, network: str = 'ethereum', config: Optional[ModuleConfig] = None,
                 analyzer=None, dex=None, classifier=None,
                 alert_system: Optional[AlertSystem] = None,
                 alert_store: Optional[AlertStore] = None):
        self.network = network
        self.config = config or ModuleConfig()
        self.config.get_network(network)

        self.analyzer = analyzer or TokenAnalyzer(self.config)
        self.dex = dex or DexAnalyzer(self.config)
        self.classifier = classifier or WalletClassifier(self.analyzer, self.config)
        self.alert_store = alert_store or AlertStore(os.path.join(self.config.data_dir, 'alerts.jsonl'))
        self.alert_system = alert_system or AlertSystem(self.config.alerts, self.alert_store)

        self.monitor: Optional[RealTimeMonitor] = None
        self.analyses: Dict[str, AnalysisResult] = {}
        self._cache_connected = False

    async def connect_cache(self):
        """Conecta o cache Redis configurado uma única vez por tracker"""
        if not self._cache_connected:
            self._cache_connected = True
            await self.config.connect_redis()

    async def _run_stage(self, stage: str, coro):
        """Executa uma etapa convertendo falhas inesperadas em FatalAnalysisError"""
        try:
            return await coro
        except (FatalAnalysisError, ConfigurationError):
            raise
        except Exception as e:
            raise FatalAnalysisError(stage, str(e) or type(e).__name__) from e

    @trace.trace_operation
    async def analyze_token(self, contract_address: str) -> AnalysisResult:
        """Metadados, holders, classificação e risco de um token"""
        if not Validator.validate_address(contract_address):
            raise FatalAnalysisError("input", f"Invalid contract address: {contract_address}")

        contract_address = contract_address.lower()
        network = self.network
        await self.connect_cache()

        metadata = await self._run_stage(
            "metadata", self.analyzer.get_token_metadata(contract_address, network)
        )

        # Implementador é opcional: ausência não interrompe a análise
        deployer = await self.analyzer.get_contract_deployer(contract_address, network)

        holders = await self._run_stage(
            "holders", self.analyzer.get_top_holders(contract_address, network, metadata)
        )

        classification = await self._run_stage(
            "classification", self.classifier.classify_all(holders, deployer, metadata, network)
        )
        risk = self.classifier.assess_risk(classification.team, classification.bundle)

        market = await self.dex.get_market_data(contract_address, network)

        result = AnalysisResult(
            contract_address=contract_address,
            network=network,
            metadata=metadata,
            holders=holders,
            team_wallets=classification.team,
            bundle_wallets=classification.bundle,
            regular_wallets=classification.regular,
            risk_assessment=risk,
            timestamp=datetime.now(pytz.utc),
            deployer=deployer,
            distribution=TokenAnalyzer.holder_distribution(holders),
            market=market
        )
        self.analyses[contract_address] = result

        trace.log_event("TOKEN_ANALYSIS", "SUCCESS", {
            "network": network,
            "token": contract_address,
            "symbol": metadata.symbol,
            "holders": len(holders),
            "team": len(result.team_wallets),
            "bundle": len(result.bundle_wallets),
            "risk_level": risk.risk_level.value
        })

        if self.config.save_analyses:
            self._save_analysis(result)

        if risk.risk_level == RiskLevel.HIGH and self.config.alerts.notify_high_risk:
            data = risk.to_dict()
            data.update({'token_address': contract_address, 'symbol': metadata.symbol})
            self.alert_system.notify("HIGH_RISK", network, data, 'high')

        return result

    @trace.trace_operation
    def _save_analysis(self, result: AnalysisResult) -> Optional[str]:
        """Salva a análise em arquivo"""
        filename = os.path.join(
            self.config.data_dir,
            f"{result.network}_{result.contract_address}_{int(time.time())}.json"
        )
        try:
            os.makedirs(self.config.data_dir, exist_ok=True)
            data = result.to_dict()
            data['module_version'] = ModuleIdentity.VERSION
            with open(filename, 'w') as f:
                json.dump(data, f, indent=2, default=str)
            return filename
        except OSError as e:
            trace.log_event("ANALYSIS_SAVE", "ERROR", {
                "file": filename,
                "error": str(e)
            })
            return None

    def build_monitor(self) -> RealTimeMonitor:
        if self.monitor is None:
            self.monitor = RealTimeMonitor(self.analyzer, self.dex, self.alert_system, self.config)
        return self.monitor

    @trace.trace_operation
    async def watch(self, contract_address: str, result: Optional[AnalysisResult] = None) -> RealTimeMonitor:
        """Monitora as carteiras team e bundle da análise do token"""
        await self.connect_cache()
        contract_address = contract_address.lower()
        if result is None:
            result = self.analyses.get(contract_address) or await self.analyze_token(contract_address)

        monitor = self.build_monitor()
        if monitor.is_monitoring:
            monitor.stop_monitoring()
        monitor.initialize(contract_address, self.network, result.watchlist())
        await monitor.start_monitoring()
        return monitor

    async def close(self):
        try:
            if self.monitor is not None:
                await self.monitor.shutdown()
            await self.alert_system.drain()
        finally:
            for client in (self.analyzer, self.dex):
                close = getattr(client, 'close', None)
                if close is not None:
                    await close()
