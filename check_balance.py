#!/usr/bin/env python3
"""
Quick balance check - prints the available USDT futures balance
"""
import logging
import sys
from pathlib import Path

# Add project to path
sys.path.insert(0, str(Path(__file__).parent))

from core.exceptions import TradingError
from core.exchange_aster import AsterExchange
from core.signing import build_signer
from tools.config_validator import load_config, load_credentials

logger = logging.getLogger(__name__)


def main(config_path: str = "config/app.yaml") -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    try:
        config = load_config(config_path)
        credentials = load_credentials(config.exchange.auth_mode)
        exchange = AsterExchange.from_config(
            config.exchange,
            signer=build_signer(credentials, config.exchange.recv_window_ms),
        )
        exchange.connect()
        balance = exchange.get_usdt_balance()
    except TradingError as e:
        logger.error(f"Error: {e}")
        print(f"❌ {e}")
        return 1

    print("\n" + "=" * 50)
    print(f"💰 USDT Balance: {balance:.2f} USDT")
    print(f"   Exchange: {config.exchange.resolved_base_url}")
    print("=" * 50 + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main(*sys.argv[1:2]))
