"""
Run the HR workflow API with uvicorn.

Usage:
    python run.py
    python run.py --reload    # Development mode with auto-reload
    python run.py --port 8080 # Custom port

Host and port default to API_HOST / API_PORT from the environment or .env.
"""
import argparse
import uvicorn

from hrflow.config.settings import settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the HR Workflow Engine API server")
    parser.add_argument("--host", default=settings.api_host, help=f"Host to bind to (default: {settings.api_host})")
    parser.add_argument("--port", type=int, default=settings.api_port, help=f"Port to bind to (default: {settings.api_port})")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1, ignored with --reload)"
    )
    return parser


def main():
    args = build_parser().parse_args()

    if args.workers > 1 and settings.scheduler_enabled:
        # every worker would run its own timer scans
        print("Warning: SCHEDULER_ENABLED with several workers runs one set of timer scans per worker")

    print(f"HR Workflow Engine [{settings.environment}] on http://{args.host}:{args.port}")
    print(f"  MongoDB: {settings.mongo_db} (transactions {'on' if settings.mongo_transactions else 'off'})")
    print(f"  Transition matching: {settings.transition_matching}")

    uvicorn.run(
        "hrflow.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1 if args.reload else args.workers,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    main()
