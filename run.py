#!/usr/bin/env python3
"""
Compliance Workflows Entry Point

Builds the engine from CWF_* environment settings and runs the SLA
scheduler and event outbox until interrupted.
"""

import sys
import time
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from compliance_workflows.config import get_config
from compliance_workflows.engine import WorkflowEngine
from compliance_workflows.logging_config import setup_logging


if __name__ == "__main__":
    settings = get_config()
    logger = setup_logging(settings.log_level, "cwf", settings.log_format, settings.log_file)

    print("Starting Compliance Workflows...")
    print(f"Storage: {settings.database_url}")
    print(f"SLA sweep every {settings.sla_sweep_interval_seconds}s")
    print(f"Kafka events: {'enabled' if settings.enable_kafka_events else 'disabled'}")
    print()

    try:
        engine = WorkflowEngine.from_settings(settings)
    except Exception as e:
        logger.error(f"Error starting engine: {e}", exc_info=True)
        print(f"Error starting engine: {e}")
        sys.exit(1)

    engine.start()
    logger.info("Compliance Workflows running")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nShutting down Compliance Workflows...")
    finally:
        engine.close()
