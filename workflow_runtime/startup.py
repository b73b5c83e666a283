"""Application startup script and CLI interface."""

import sys
import json
import argparse

from .config import (
    AppConfig,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.logging import get_logger, setup_logging


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="Workflow Runtime - queue-backed execution of node-graph workflows"
    )

    # Server configuration
    parser.add_argument("--host", help="Host to bind the server to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to bind the server to (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")

    # Database configuration
    parser.add_argument("--database-url", help="Database connection URL")

    # Logging configuration
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    # Execution configuration
    parser.add_argument(
        "--strict-branching",
        action="store_true",
        help="Follow only the edges matching a condition node's branch"
    )

    # Commands
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run the workflow runtime server")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    execute_parser = subparsers.add_parser("execute", help="Store a workflow file and run it to completion")
    execute_parser.add_argument("workflow_file", help="Path to a workflow definition JSON file")
    execute_parser.add_argument("--trigger", default="{}", help="Trigger data as a JSON object")
    execute_parser.add_argument("--wait", type=float, default=300.0, help="Seconds to wait for the run")

    health_parser = subparsers.add_parser("health", help="Run health checks")
    health_parser.add_argument("--detailed", action="store_true", help="Run detailed health checks")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


_PRESETS = {
    "development": get_development_config,
    "production": get_production_config,
    "testing": get_testing_config,
}

# Command line option -> AppConfig field; unset options keep the loaded value
_CLI_OVERRIDES = {
    "host": "host",
    "port": "port",
    "reload": "reload",
    "database_url": "database_url",
    "log_level": "log_level",
    "log_file": "log_file",
    "debug": "debug",
    "strict_branching": "strict_condition_branching",
}


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    config = _PRESETS[args.env]() if args.env else load_config(args.config)

    overrides = {
        field: getattr(args, option)
        for option, field in _CLI_OVERRIDES.items()
        if getattr(args, option) not in (None, False)
    }
    if overrides:
        config = AppConfig.model_validate({**config.model_dump(), **overrides})
    return config


def run_server(config: AppConfig):
    """Run the workflow runtime server."""
    import uvicorn
    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server on {config.host}:{config.port}")
    uvicorn.run(create_app(config), **config.get_uvicorn_config())


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .storage.database import configure_database, create_tables, drop_tables

    logger = get_logger(__name__)
    configure_database(config.database_url, echo=config.database_echo)

    if command == "init":
        logger.info("Initializing database tables...")
        create_tables()
        logger.info("Database tables created successfully")

    elif command == "reset":
        logger.info("Resetting database...")
        drop_tables()
        create_tables()
        logger.info("Database reset completed successfully")


def run_workflow_file(config: AppConfig, workflow_file: str, trigger: str, wait: float):
    """Store a workflow from a JSON file, run it in-process and print the outcome."""
    from .core.run_service import run_job_id
    from .factory import initialize_core_components, initialize_database

    logger = get_logger(__name__)
    with open(workflow_file, "r", encoding="utf-8") as f:
        definition = json.load(f)
    trigger_data = json.loads(trigger)

    initialize_database(config, logger)
    state = initialize_core_components(config, None, logger)
    state.run_service.start()

    try:
        workflow = state.workflow_store.save_workflow(definition)
        record = state.run_service.submit_run(workflow.id, trigger_data)
        job = state.job_queue.get_job(run_job_id(record.id))
        if job is None or not job.wait(timeout=wait):
            print(f"Execution {record.id} did not finish within {wait} seconds")
            sys.exit(1)

        execution = state.execution_store.get_execution(record.id)
        print(f"Execution: {execution.id}")
        print(f"Status: {execution.status.value}")
        if execution.error_message:
            print(f"Error: {execution.error_message}")
        for node_record in state.execution_store.get_node_executions(record.id):
            print(f"  {node_record.node_id} ({node_record.node_type}): {node_record.status.value}")
        print(json.dumps(execution.node_outputs or {}, indent=2, default=str))

        if execution.status.value != "completed":
            sys.exit(1)
    finally:
        state.job_queue.shutdown(wait=True, timeout=config.queue_shutdown_timeout)


async def run_health_check(config: AppConfig, detailed: bool = False):
    """Run health checks against the configured database and a fresh set of components."""
    logger = get_logger(__name__)

    if detailed:
        from .factory import initialize_core_components, initialize_database, setup_health_checks

        logger.info("Running detailed health checks...")
        initialize_database(config, logger)
        state = initialize_core_components(config, None, logger)
        setup_health_checks(state.health_checker, state, logger)
        results = await state.health_checker.run_all_checks()
        state.job_queue.shutdown(wait=False)

        print(f"Overall Status: {results['overall_status']}")
        print(f"Timestamp: {results['timestamp']}")

        for check_name, result in results.get('checks', {}).items():
            status = result.get('status', 'unknown')
            message = result.get('message', 'No message')
            print(f"  {check_name}: {status} - {message}")

        if results['overall_status'] != 'healthy':
            sys.exit(1)
    else:
        logger.info("Running basic health check...")
        print(f"Service: {config.app_name}")
        print("Status: Running")
        print(f"Version: {config.app_version}")


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Strict Condition Branching: {config.strict_condition_branching}")
    print(f"  WebSocket Max Connections: {config.websocket_max_connections}")
    print("  Lanes:")
    for name, lane in config.lanes.items():
        print(
            f"    {name}: concurrency={lane.concurrency} priority={lane.priority} "
            f"attempts={lane.attempts} backoff={lane.backoff_type.value}/{lane.backoff_delay}s "
            f"timeout={lane.timeout}"
        )


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
        print("All configuration settings are valid.")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def main():
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args()

    try:
        config = load_configuration(args)
        validate_config(config)
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )

        if args.command == "run" or args.command is None:
            run_server(config)

        elif args.command == "db":
            if args.db_command:
                run_database_command(args.db_command, config)
            else:
                print("Database command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "execute":
            run_workflow_file(config, args.workflow_file, args.trigger, args.wait)

        elif args.command == "health":
            import asyncio
            asyncio.run(run_health_check(config, args.detailed))

        elif args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
        else:
            parser.print_help()

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
