#!/usr/bin/env python3
"""
Command-line interface for the tarot event pipeline.

Usage:
    python cli.py [command] [options]

Commands:
    demo        Run demo scenarios
    test        Run the test suite
    serve       Start the notification service API

Examples:
    python cli.py demo notification
    python cli.py demo cascade-delete
    python cli.py demo all
    python cli.py serve
"""

import argparse
import subprocess
import sys


def run_demo(scenario: str) -> None:
    """Run a demo scenario."""
    from event_driven.demo import run

    run(scenario)


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = [sys.executable, "-m", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """
    Start the API server.

    The broker comes from TAROT_BROKER_BACKEND. The in-memory backend lives
    inside this process, so nothing else can publish to it; it only makes
    sense for tests and demos. Point a real deployment at Redis.
    """
    import uvicorn

    from shared.config import PipelineSettings

    settings = PipelineSettings()
    if settings.broker_backend == "memory":
        print("WARNING: TAROT_BROKER_BACKEND=memory keeps the event log inside this process.")
        print("         No other service can publish to it; set TAROT_BROKER_BACKEND=redis for real traffic.")
    else:
        print(f"Consuming from {settings.broker_backend} at {settings.redis_url}")
    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    uvicorn.run("api.main:app", host=host, port=port, reload=reload)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Tarot Event Pipeline CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s demo notification
  %(prog)s demo outage
  %(prog)s demo all
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Demo command
    demo_parser = subparsers.add_parser("demo", help="Run demo scenarios")
    demo_parser.add_argument(
        "scenario",
        choices=["notification", "cascade-delete", "outage", "all"],
        help="Which scenario to run",
    )

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    # Serve command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Start the notification service API (set TAROT_BROKER_BACKEND=redis; "
        "the default in-memory log only suits tests and demos)",
    )
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    if args.command == "demo":
        run_demo(args.scenario)
    elif args.command == "test":
        run_tests(args.pytest_args)
    elif args.command == "serve":
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
