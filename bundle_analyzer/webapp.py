#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import os
from typing import Callable, Dict, List, Optional
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, field_validator
import uvicorn

from .config import ModuleConfig
from .alerts import AlertStore
from .errors import ConfigurationError, FatalAnalysisError
from .tracker import BundleTracker
from .utils import Utils, Validator, trace

# ==============================================
# Módulo: Modelos da API
# ==============================================

class WalletIn(BaseModel):
    address: str
    type: str = "unknown"
    percentage: float = 0.0

    @field_validator('address')
    @classmethod
    def check_address(cls, value: str) -> str:
        if not Validator.validate_address(value):
            raise ValueError('invalid wallet address')
        return value.lower()


class MonitorRequest(BaseModel):
    network: str = 'ethereum'
    token_address: str
    wallets: Optional[List[WalletIn]] = None

    @field_validator('token_address')
    @classmethod
    def check_token(cls, value: str) -> str:
        if not Validator.validate_address(value):
            raise ValueError('invalid token address')
        return value.lower()

# ==============================================
# Módulo: API Web
# ==============================================

def analysis_error(error: FatalAnalysisError) -> HTTPException:
    """Falha de entrada vira 400; demais etapas, 502 com a etapa no corpo"""
    status_code = 400 if error.stage == "input" else 502
    return HTTPException(status_code=status_code, detail={"stage": error.stage, "error": str(error)})


def create_app(config: Optional[ModuleConfig] = None,
               tracker_factory: Optional[Callable[[str], BundleTracker]] = None,
               alert_store: Optional[AlertStore] = None) -> FastAPI:
    """Cria a aplicação; os trackers são criados sob demanda por rede"""
    app = FastAPI(title="BundleAnalyzer")
    trackers: Dict[str, BundleTracker] = {}
    state = {'config': config, 'store': alert_store}

    def get_config() -> ModuleConfig:
        if state['config'] is None:
            state['config'] = ModuleConfig()
        return state['config']

    def get_store() -> AlertStore:
        if state['store'] is None:
            state['store'] = AlertStore(os.path.join(get_config().data_dir, 'alerts.jsonl'))
        return state['store']

    def get_tracker(network: str) -> BundleTracker:
        tracker = trackers.get(network)
        if tracker is None:
            try:
                if tracker_factory is not None:
                    tracker = tracker_factory(network)
                else:
                    tracker = BundleTracker(network, get_config(), alert_store=get_store())
            except ConfigurationError as e:
                trace.log_event("TRACKER_INIT", "ERROR", {
                    "network": network,
                    "error": str(e)
                })
                raise HTTPException(status_code=404, detail="Network not supported")
            trackers[network] = tracker
        return tracker

    app.state.trackers = trackers
    app.state.get_tracker = get_tracker

    @app.on_event("shutdown")
    async def shutdown_event():
        """Encerra monitores e sessões HTTP"""
        for tracker in list(trackers.values()):
            await tracker.close()
        if state['config'] is not None:
            await state['config'].close_redis()

    @app.get("/api/health")
    async def health_check():
        """Endpoint de verificação de saúde"""
        return get_config().health_check()

    @app.get("/api/analyze/{network}/{token_address}")
    async def analyze_token(network: str, token_address: str):
        """Análise de holders e carteiras team/bundle"""
        tracker = get_tracker(network)
        try:
            result = await tracker.analyze_token(token_address)
        except FatalAnalysisError as e:
            raise analysis_error(e)
        except ConfigurationError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return Utils.generate_sclp_code(result.to_dict())

    @app.post("/api/monitor/start")
    async def start_monitor(request: MonitorRequest):
        """Inicia o monitoramento das carteiras informadas ou da watchlist da análise"""
        tracker = get_tracker(request.network)
        try:
            if request.wallets is None:
                monitor = await tracker.watch(request.token_address)
            else:
                await tracker.connect_cache()
                monitor = tracker.build_monitor()
                if monitor.is_monitoring:
                    monitor.stop_monitoring()
                monitor.initialize(
                    request.token_address,
                    request.network,
                    [w.model_dump() for w in request.wallets]
                )
                await monitor.start_monitoring()
        except FatalAnalysisError as e:
            raise analysis_error(e)
        except ConfigurationError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return monitor.get_status()

    @app.post("/api/monitor/{network}/stop")
    async def stop_monitor(network: str):
        tracker = get_tracker(network)
        if tracker.monitor is not None:
            tracker.monitor.stop_monitoring()
        return {"status": "stopped"}

    @app.get("/api/monitor/{network}/status")
    async def monitor_status(network: str):
        tracker = get_tracker(network)
        return tracker.build_monitor().get_status()

    @app.get("/api/monitor/{network}/wallets")
    async def monitor_wallets(network: str):
        tracker = get_tracker(network)
        return Utils.generate_sclp_code({"wallets": tracker.build_monitor().get_wallets()})

    @app.get("/api/alerts")
    async def recent_alerts(limit: int = 50):
        """Alertas de venda mais recentes"""
        return {"alerts": get_store().recent(max(1, min(limit, 500)))}

    @app.get("/api/events")
    async def recent_events(limit: int = 100):
        return {"events": trace.get_recent_events(max(1, min(limit, 1000)))}

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8000):
    """Executa a API web"""
    uvicorn.run(app, host=host, port=port)
