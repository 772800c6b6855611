"""
CLI entry point.

Commands:
- init: Create data directory and database schema
- stats: Print component statistics as JSON
- evolve <agent_id> <user_id>: Run one strategy evolution evaluation
- scan: Run a comprehensive contamination check

Flags:
- --debug: Enable debug logging to file
"""

import asyncio
import json
import logging
import sys

from mnemo.core.config import Settings, get_settings
from mnemo.core.logging import get_logger, setup_logging

USAGE = "Usage: mnemo [--debug] <command>"
COMMANDS = "Commands: init, stats, evolve <agent_id> <user_id>, scan"


def main() -> int:
    """Main entry point."""
    settings = get_settings()

    debug_mode = "--debug" in sys.argv
    if debug_mode:
        sys.argv.remove("--debug")

    log_level = logging.DEBUG if debug_mode else logging.INFO
    log_file = settings.data_dir / "mnemo.log"
    setup_logging(level=log_level, log_file=log_file)
    logger = get_logger("cli")

    logger.info(f"Logging to {log_file}" + (" (debug mode)" if debug_mode else ""))

    if len(sys.argv) < 2:
        print(USAGE)
        print(COMMANDS)
        print("Flags: --debug (enable debug logging to data/mnemo.log)")
        return 1

    command = sys.argv[1]

    if command == "init":
        return asyncio.run(_init(settings))

    if command == "stats":
        return asyncio.run(_stats(settings))

    if command == "evolve":
        if len(sys.argv) < 4:
            print("Usage: mnemo evolve <agent_id> <user_id>")
            return 1
        return asyncio.run(_evolve(settings, sys.argv[2], sys.argv[3]))

    if command == "scan":
        return asyncio.run(_scan(settings))

    print(f"Unknown command: {command}")
    return 1


def _service(settings: Settings):
    from mnemo.memory.service import MemoryService

    return MemoryService(settings=settings)


async def _init(settings: Settings) -> int:
    service = _service(settings)
    await service.connect()
    await service.close()
    get_logger("cli").info(f"Initialized memory store: {settings.db_path}")
    print(f"Created: {settings.db_path}")
    return 0


async def _stats(settings: Settings) -> int:
    service = _service(settings)
    await service.connect()
    try:
        stats = await service.get_system_stats()
        print(json.dumps(stats, indent=2, default=str))
    finally:
        await service.close()
    return 0


async def _evolve(settings: Settings, agent_id: str, user_id: str) -> int:
    logger = get_logger("cli.evolve")
    service = _service(settings)
    await service.connect()
    try:
        instance = await service.get_instance(agent_id, user_id)
        decision = await service.evolve_instance(instance)
    except Exception as e:
        logger.error(f"Evolution failed: {e}", exc_info=True)
        print(f"Error: {e}")
        return 1
    finally:
        await service.close()

    print(f"Decision: {decision.reason}")
    print(f"Average fitness: {decision.avg_fitness:.3f}")
    if decision.applied:
        print(f"Evolved: {', '.join(decision.applied)}")
    print(json.dumps(service.strategies.to_dict(), indent=2))
    return 0


async def _scan(settings: Settings) -> int:
    service = _service(settings)
    await service.connect()
    try:
        result = await service.isolation.perform_comprehensive_check()
        denials = [a for a in await service.memory_store.list_audit(limit=20) if not a["allowed"]]
    finally:
        await service.close()

    print(
        f"Contexts checked: {result['total_contexts']}, "
        f"contaminated: {result['contaminated_contexts']}"
    )
    if denials:
        print("Recent denials:")
        for audit in denials:
            print(f"  {audit['timestamp']} {audit['context_id']} {audit['operation']}: "
                  f"{audit['reason']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
