#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import asyncio
from typing import List, Optional

from .config import ModuleConfig, RiskThresholds
from .models import (
    ClassificationResult, ClassifiedWallet, Deployer, Holder, RiskAssessment,
    RiskLevel, TokenMetadata, Transaction, WalletClassification, WalletType
)
from .utils import Utils, trace

# ==============================================
# Módulo: Risco Agregado
# ==============================================

def assess_risk_from_percentages(team_supply: float, bundle_supply: float,
                                 thresholds: Optional[RiskThresholds] = None) -> RiskAssessment:
    """Nível de risco a partir das fatias de supply de team e bundle"""
    thresholds = thresholds or RiskThresholds()

    if team_supply > thresholds.team_high:
        risk_level = RiskLevel.HIGH
        recommendation = "HIGH RISK: Team controls significant portion of supply."
    elif bundle_supply > thresholds.bundle_high:
        risk_level = RiskLevel.HIGH
        recommendation = "HIGH RISK: Large bundle wallet presence detected."
    elif team_supply > thresholds.medium or bundle_supply > thresholds.medium:
        risk_level = RiskLevel.MEDIUM
        recommendation = "MEDIUM RISK: Monitor team and bundle wallet activity."
    else:
        risk_level = RiskLevel.LOW
        recommendation = "Token appears to have low risk factors."

    return RiskAssessment(
        risk_level=risk_level,
        recommendation=recommendation,
        team_supply_percentage=team_supply,
        bundle_supply_percentage=bundle_supply
    )


def assess_risk(team_wallets: List[ClassifiedWallet], bundle_wallets: List[ClassifiedWallet],
                thresholds: Optional[RiskThresholds] = None) -> RiskAssessment:
    return assess_risk_from_percentages(
        sum(w.percentage for w in team_wallets),
        sum(w.percentage for w in bundle_wallets),
        thresholds
    )

# ==============================================
# Módulo: Classificação de Carteiras
# ==============================================

class WalletClassifier:
    """Classifica holders como team, bundle ou regular.

    As regras são avaliadas em ordem e a primeira que casar vence. A regra
    de concentração usa apenas os dados do holder e vem antes das regras
    que exigem consultas por carteira.
    """

    def __init__(self, analyzer, config: Optional[ModuleConfig] = None):
        self.analyzer = analyzer
        self.config = config or ModuleConfig()
        self.thresholds = self.config.classifier
        self.rules = [
            self._concentration_rule,
            self._deployer_funding_rule,
            self._bundle_pattern_rule
        ]

    @property
    def request_timeout(self) -> float:
        return self.config.monitor.request_timeout

    async def _concentration_rule(self, holder: Holder, deployer: Optional[Deployer],
                                  metadata: TokenMetadata, network: str) -> Optional[WalletClassification]:
        if holder.percentage > self.thresholds.team_threshold_percent:
            risk = RiskLevel.HIGH if holder.percentage > self.thresholds.high_risk_team_percent else RiskLevel.MEDIUM
            return WalletClassification.team(f"Holds {holder.percentage:.2f}% of total supply", risk)
        return None

    async def _deployer_funding_rule(self, holder: Holder, deployer: Optional[Deployer],
                                     metadata: TokenMetadata, network: str) -> Optional[WalletClassification]:
        if deployer is None or not deployer.address:
            return None

        try:
            funded = await asyncio.wait_for(
                self.analyzer.was_funded_by(holder.address, deployer.address, network),
                timeout=self.request_timeout
            )
        except Exception as e:
            trace.log_event("DEPLOYER_FUNDING_CHECK", "WARNING", {
                "wallet": holder.address,
                "network": network,
                "error": str(e) or type(e).__name__
            })
            return None

        if funded:
            return WalletClassification.bundle("Funded by contract deployer", RiskLevel.HIGH)
        return None

    async def _bundle_pattern_rule(self, holder: Holder, deployer: Optional[Deployer],
                                   metadata: TokenMetadata, network: str) -> Optional[WalletClassification]:
        try:
            transactions = await asyncio.wait_for(
                self.analyzer.get_transactions(holder.address, network, limit=self.thresholds.history_limit),
                timeout=self.request_timeout
            )
        except Exception as e:
            trace.log_event("BUNDLE_PATTERN_CHECK", "WARNING", {
                "wallet": holder.address,
                "network": network,
                "error": str(e) or type(e).__name__
            })
            return None

        reason = self.detect_bundle_pattern(holder.address, transactions)
        if reason:
            return WalletClassification.bundle(reason, RiskLevel.MEDIUM)
        return None

    def detect_bundle_pattern(self, address: str, transactions: List[Transaction]) -> Optional[str]:
        """Motivo do padrão de bundle encontrado no histórico, ou ``None``"""
        outgoing = [tx for tx in transactions if tx.is_outgoing(address)]
        incoming_count = len(transactions) - len(outgoing)
        low_activity = len(transactions) < self.thresholds.low_activity_tx_count

        if not low_activity:
            return None

        window = self.thresholds.quick_flip_window_seconds
        quick_flip = any(
            other is not sell and abs(sell.timestamp - other.timestamp) <= window
            for sell in outgoing
            for other in transactions
        )
        if quick_flip:
            return "Quick sell pattern detected"

        if len(outgoing) > incoming_count:
            return "High sell ratio with low activity"

        return None

    async def classify(self, holder: Holder, deployer: Optional[Deployer],
                       metadata: TokenMetadata, network: str) -> WalletClassification:
        for rule in self.rules:
            classification = await rule(holder, deployer, metadata, network)
            if classification is not None:
                return classification
        return WalletClassification.regular()

    @trace.trace_operation
    async def classify_all(self, holders: List[Holder], deployer: Optional[Deployer],
                           metadata: TokenMetadata, network: str) -> ClassificationResult:
        """Classifica cada holder de forma independente e separa em grupos"""
        semaphore = asyncio.Semaphore(max(1, self.thresholds.max_concurrency))

        async def _classify_one(holder: Holder) -> ClassifiedWallet:
            async with semaphore:
                try:
                    classification = await self.classify(holder, deployer, metadata, network)
                except Exception as e:
                    trace.log_event("WALLET_CLASSIFICATION", "ERROR", {
                        "wallet": holder.address,
                        "network": network,
                        "error": str(e)
                    })
                    classification = WalletClassification.unknown()
                return ClassifiedWallet(holder=holder, classification=classification)

        classified = await asyncio.gather(*(_classify_one(h) for h in holders))

        result = ClassificationResult()
        for wallet in classified:
            if wallet.wallet_type == WalletType.TEAM:
                result.team.append(wallet)
            elif wallet.wallet_type == WalletType.BUNDLE:
                result.bundle.append(wallet)
            else:
                result.regular.append(wallet)

        trace.log_event("WALLET_CLASSIFICATION", "SUCCESS", {
            "network": network,
            "token": metadata.symbol,
            "team": len(result.team),
            "bundle": len(result.bundle),
            "regular": len(result.regular),
            "top_holder": Utils.short_address(holders[0].address) if holders else None
        })
        return result

    def assess_risk(self, team_wallets: List[ClassifiedWallet], bundle_wallets: List[ClassifiedWallet]) -> RiskAssessment:
        return assess_risk(team_wallets, bundle_wallets, self.config.risk)
