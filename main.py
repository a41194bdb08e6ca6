"""
Survival Agent - Main Entry Point

An autonomous trading agent that manages volatile positions under hard
capital guardrails and keeps itself alive with a reserve asset.

Usage:
    # Check configuration
    python main.py --check

    # Run with simulated execution
    python main.py --paper

    # Show persisted state
    python main.py --status

    # Initialize database
    python main.py --init-db

    # Clear a loss-streak cooldown
    python main.py --clear-cooldown

    # Sell every open position
    python main.py --emergency-exit
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Add src to path
sys.path.insert(0, str(Path(__file__).parent))

import structlog

from src.core.agent import SurvivalAgent, create_agent
from src.core.config import agent_config
from src.core.context import AgentContext
from src.risk.risk_manager import RiskGuardrail
from src.storage.database import StateStore
from src.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


class AgentApp:
    """
    Application wrapper for the survival agent.

    Owns the state store and the agent, installs signal handlers and makes
    sure state is flushed on the way out.
    """

    def __init__(self, context: Optional[AgentContext] = None):
        self.context = context or AgentContext()

        # Components
        self.store: Optional[StateStore] = None
        self.agent: Optional[SurvivalAgent] = None

        # State
        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self):
        """Initialize all components based on configuration."""
        logger.info(
            "app.initializing",
            execution_mode=agent_config.system.execution_mode,
            environment=agent_config.system.environment,
        )

        self.store = StateStore()
        await self.store.initialize()
        logger.info("app.database_initialized")

        self.agent = create_agent(self.context, store=self.store)

        self._initialized = True
        logger.info("app.initialized")

    async def run(self):
        """Run the agent until a shutdown signal arrives."""
        if not self._initialized:
            raise RuntimeError("App not initialized. Call initialize() first.")

        # Setup signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        try:
            await self.agent.start()
            await self._shutdown_event.wait()
        except Exception as e:
            logger.error("app.error", error=str(e), exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Perform graceful shutdown."""
        logger.info("app.shutting_down")

        if self.agent:
            if self.agent.is_running:
                await self.agent.stop()
            await self.agent.executor.close()
            if self.agent.market_data is not None:
                await self.agent.market_data.close()

        if self.store:
            await self.store.close()

        logger.info("app.shutdown_complete")

    def _signal_handler(self):
        """Handle shutdown signals."""
        logger.info("app.shutdown_signal_received")
        self._shutdown_event.set()

    async def emergency_exit(self) -> int:
        """Restore positions and sell them all. Returns trades executed."""
        await self.agent.load_state()
        trades = await self.agent.emergency_exit()
        return len(trades)


def print_banner():
    """Print the startup banner."""
    banner = f"""
╔══════════════════════════════════════════════════════════════════╗
║                                                                  ║
║              SURVIVAL AGENT v{agent_config.system.app_version:<10}                         ║
║                                                                  ║
║     Live position control | Risk guardrails | Capital survival   ║
║                                                                  ║
╚══════════════════════════════════════════════════════════════════╝
"""
    print(banner)


def check_configuration() -> Dict[str, Any]:
    """
    Check if configuration is valid.

    Returns:
        Dictionary with validation results
    """
    validation = agent_config.validate_configuration()
    warnings = list(validation["warnings"])

    if agent_config.is_paper_trading:
        warnings.append("✓ Paper execution (simulated fills)")
    else:
        warnings.append("⚠️  LIVE execution requested")

    return {
        "valid": validation["valid"],
        "issues": validation["issues"],
        "warnings": warnings,
        "execution_mode": agent_config.system.execution_mode,
        "initial_capital": str(agent_config.capital.initial_capital),
        "max_daily_loss": str(agent_config.max_daily_loss),
        "watchlist": agent_config.loop.watchlist,
    }


def print_status(snapshot_doc: Optional[Dict[str, Any]]):
    """Print the persisted state snapshot."""
    print("\n" + "=" * 60)
    print("           SURVIVAL AGENT - PERSISTED STATE")
    print("=" * 60)

    if snapshot_doc is None:
        print("\nNo saved state found.")
        print("\n" + "=" * 60)
        return

    print(f"\n🕐 Saved At: {snapshot_doc.get('saved_at', 'N/A')}")

    positions = snapshot_doc.get("positions", {})
    print(f"\n📈 Positions (Total: {len(positions)}):")
    if positions:
        for asset, pos in positions.items():
            stop = pos.get("trailing_stop_price") or "-"
            print(
                f"   - {asset}: {pos['quantity']} @ {pos['entry_price']} "
                f"(capital {pos['capital_value']}, stop {stop}, {pos['status']})"
            )
    else:
        print("   No open positions")

    risk = snapshot_doc.get("risk", {})
    print(f"\n⛔ Risk:")
    print(f"   Daily P&L: {risk.get('daily_pnl', '0')} ({risk.get('daily_reset_date', 'N/A')})")
    print(f"   Peak Balance: {risk.get('peak_balance', '0')}")
    print(f"   Drawdown: {risk.get('current_drawdown', '0')}%")
    print(f"   Consecutive Losses: {risk.get('consecutive_losses', 0)}")
    if risk.get("cooldown_until"):
        print(f"   Cooldown Until: {risk['cooldown_until']}")

    survival = snapshot_doc.get("survival", {})
    print(f"\n🦎 Survival:")
    print(f"   Status: {str(survival.get('status', 'N/A')).upper()}")
    print(f"   Reserve: {survival.get('reserve_balance', '0')} ({survival.get('reserve_value', '0')})")
    print(f"   Pending Purchase: {survival.get('pending_reserve_purchase', '0')}")
    print(f"   Operating Reserve: {survival.get('operating_reserve', '0')}")
    print(f"   Survival Sells: {survival.get('survival_sell_count', 0)}")

    print("\n" + "=" * 60)


async def clear_cooldown() -> bool:
    """Clear a persisted cooldown. Returns False when no state exists."""
    store = StateStore()
    await store.initialize()
    try:
        snapshot = await store.load()
        if snapshot is None:
            return False

        context = AgentContext(risk_state=snapshot.risk, survival_state=snapshot.survival)
        RiskGuardrail(context).clear_cooldown()
        snapshot.risk = context.risk_state
        snapshot.saved_at = context.now()
        return await store.save(snapshot)
    finally:
        await store.close()


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Survival Agent - autonomous position and capital control"
    )

    # Execution mode
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--paper", action="store_true", help="Simulated execution")
    mode.add_argument("--live", action="store_true", help="Live execution")

    # Actions
    parser.add_argument(
        "--status", action="store_true", help="Show persisted state and exit"
    )
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )
    parser.add_argument(
        "--clear-cooldown",
        action="store_true",
        help="Clear the loss-streak cooldown and exit",
    )
    parser.add_argument(
        "--emergency-exit",
        action="store_true",
        help="Sell every open position and exit (USE WITH CAUTION)",
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging()

    # Print banner
    if not args.check and not args.status:
        print_banner()

    if args.paper:
        agent_config.system.execution_mode = "paper"
    elif args.live:
        agent_config.system.execution_mode = "live"

    # Check configuration
    config_check = check_configuration()

    # Print warnings
    for warning in config_check["warnings"]:
        print(warning)

    # Handle --check
    if args.check:
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)

        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")

        print(f"\nExecution Mode: {config_check['execution_mode']}")
        print(f"Initial Capital: {config_check['initial_capital']}")
        print(f"Max Daily Loss: {config_check['max_daily_loss']}")
        print(f"Watchlist: {', '.join(config_check['watchlist']) or '(empty)'}")

        print("\n" + "=" * 60)
        return

    # Handle --status
    if args.status:
        store = StateStore()
        await store.initialize()
        snapshot = await store.load()
        await store.close()
        print_status(snapshot.model_dump(mode="json") if snapshot else None)
        return

    # Handle --init-db
    if args.init_db:
        print("\n📦 Initializing database...")
        store = StateStore()
        await store.initialize()
        print("✓ Database initialized successfully")
        await store.close()
        return

    # Handle --clear-cooldown
    if args.clear_cooldown:
        if await clear_cooldown():
            print("✓ Cooldown cleared")
        else:
            print("No saved state to update.")
        return

    # If config is invalid, exit early
    if not config_check["valid"]:
        print("\n✗ Configuration errors:")
        for issue in config_check["issues"]:
            print(f"   - {issue}")
        print("\nPlease check your .env file and try again.")
        return

    app = AgentApp()

    # Handle --emergency-exit
    if args.emergency_exit:
        print("\n🚨 EMERGENCY EXIT")
        print("=" * 60)
        print("WARNING: This will sell EVERY open position at market!")
        print("=" * 60)

        confirm = input("\nType 'EXIT' to confirm: ")
        if confirm != "EXIT":
            print("Aborted.")
            return

        await app.initialize()
        try:
            sold = await app.emergency_exit()
            print(f"✓ Emergency exit complete ({sold} position(s) sold)")
        finally:
            await app.shutdown()
        return

    try:
        await app.initialize()
        await app.run()

    except KeyboardInterrupt:
        print("\n\nShutdown requested by user...")
    except Exception as e:
        logger.error("main.error", error=str(e), exc_info=True)
        print(f"\n✗ Fatal error: {e}")
        raise


if __name__ == "__main__":
    asyncio.run(main())
