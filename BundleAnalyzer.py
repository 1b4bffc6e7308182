#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import sys
import json
import asyncio
import argparse

from bundle_analyzer import (
    BundleTracker, ModuleConfig, AnalyzerError, FatalAnalysisError, run_server
)

# ==============================================
# Módulo: Linha de Comando
# ==============================================

def print_summary(result):
    """Resumo da análise em JSON"""
    summary = {
        "token": result.contract_address,
        "network": result.network,
        "symbol": result.metadata.symbol,
        "holders": len(result.holders),
        "deployer": result.deployer.address if result.deployer else None,
        "team_wallets": [w.to_dict() for w in result.team_wallets],
        "bundle_wallets": [w.to_dict() for w in result.bundle_wallets],
        "risk": result.risk_assessment.to_dict(),
        "distribution": result.distribution,
        "price": result.market.get('price')
    }
    print(json.dumps(summary, indent=2, default=str))


def print_alert(alert):
    print(f"🚨 {alert.wallet_type.value.upper()} {alert.wallet_address} vendeu "
          f"{alert.amount_sold:.4f} ({alert.change_percentage}%) ~ ${alert.usd_value:.2f}")


async def analyze(config: ModuleConfig, network: str, address: str) -> int:
    tracker = BundleTracker(network, config)
    try:
        result = await tracker.analyze_token(address)
        print_summary(result)
        return 0
    except FatalAnalysisError as e:
        print(f"Análise falhou na etapa {e.stage}: {e}", file=sys.stderr)
        return 1
    finally:
        await tracker.close()
        await config.close_redis()


async def monitor(config: ModuleConfig, network: str, address: str) -> int:
    tracker = BundleTracker(network, config)
    try:
        result = await tracker.analyze_token(address)
        print_summary(result)

        monitor = tracker.build_monitor()
        monitor.on_alert(print_alert)
        await tracker.watch(address, result)
        if not monitor.is_monitoring:
            print("Nenhuma carteira team/bundle para monitorar")
            return 0

        print(f"Monitorando {len(monitor.monitored_wallets)} carteiras (Ctrl+C para sair)")
        while monitor.is_monitoring:
            await asyncio.sleep(1)
        return 0
    except FatalAnalysisError as e:
        print(f"Análise falhou na etapa {e.stage}: {e}", file=sys.stderr)
        return 1
    finally:
        await tracker.close()
        await config.close_redis()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="BundleAnalyzer - carteiras team/bundle")
    parser.add_argument(
        '--config',
        default=None,
        help='Arquivo de configuração YAML (padrão: bundle_analyzer/module_config.yaml)'
    )
    commands = parser.add_subparsers(dest='command', required=True)

    for name, help_text in (('analyze', 'Analisa os holders de um token'),
                            ('monitor', 'Analisa e monitora as carteiras sinalizadas')):
        command = commands.add_parser(name, help=help_text)
        command.add_argument('network', help='Rede (ethereum, bsc, base, polygon, arbitrum)')
        command.add_argument('address', help='Endereço do contrato do token')

    serve = commands.add_parser('serve', help='Executa a API web')
    serve.add_argument('--host', default='0.0.0.0')
    serve.add_argument('--port', type=int, default=8000)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = ModuleConfig(args.config)
    except AnalyzerError as e:
        print(f"Configuração inválida: {e}", file=sys.stderr)
        return 2

    if args.command == 'serve':
        run_server(args.host, args.port)
        return 0

    command = analyze if args.command == 'analyze' else monitor
    try:
        return asyncio.run(command(config, args.network, args.address))
    except KeyboardInterrupt:
        print("🛑 Monitoramento encerrado")
        return 0
    except AnalyzerError as e:
        print(f"Erro: {e}", file=sys.stderr)
        return 1

# ==============================================
# Execução Principal
# ==============================================

if __name__ == "__main__":
    sys.exit(main())
