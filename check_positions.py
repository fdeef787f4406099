#!/usr/bin/env python3
"""
Quick position check - shows all open futures positions
"""
import logging
import sys
from pathlib import Path

# Add project to path
sys.path.insert(0, str(Path(__file__).parent))

from core.exceptions import TradingError
from core.exchange_aster import AsterExchange, ExchangePosition
from core.signing import build_signer
from tools.config_validator import load_config, load_credentials

logger = logging.getLogger(__name__)


def format_position(index: int, pos: ExchangePosition) -> str:
    sign = "+" if pos.unrealized_profit >= 0 else "-"
    return "\n".join([
        f"Position {index}:",
        f"  Symbol: {pos.symbol}",
        f"  Side: {pos.side}",
        f"  Position Side: {pos.position_side}",
        f"  Size: {pos.size:.4f}",
        f"  Entry Price: ${pos.entry_price:.4f}",
        f"  Mark Price: ${pos.mark_price:.4f}",
        f"  Unrealised P&L: {sign}${abs(pos.unrealized_profit):.2f}",
        f"  Leverage: {pos.leverage:g}x",
    ])


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
        positions = exchange.get_open_positions()
    except TradingError as e:
        logger.error(f"Error: {e}")
        print(f"❌ {e}")
        return 1

    print("\n" + "=" * 50)
    if not positions:
        print("📊 No open positions")
    else:
        print(f"📊 Open Positions: {len(positions)}\n")
        for index, pos in enumerate(positions, start=1):
            print(format_position(index, pos))
            print()
    print("=" * 50 + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main(*sys.argv[1:2]))
