#!/usr/bin/env python3
"""
Map Scraper - Main Entry Point

Usage:
    # Run API server (worker pools run inside it)
    python main.py server

    # Run the scrape and enrichment worker pools without HTTP
    python main.py worker

    # Create and queue a job from the command line
    python main.py enqueue --client "Acme" --term dentist --term orthodontist --location "Austin, TX"
"""

import sys
import asyncio
import argparse
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def check_environment() -> bool:
    """Check the configuration before starting anything."""
    from api.config import config

    problems = config.validate()
    if problems:
        print("❌ Configuration problems:")
        for problem in problems:
            print(f"  - {problem}")
        print("\nPlease fix these in your .env file or environment.")
        return False

    if not (config.DISCORD_WEBHOOK_URL or config.SLACK_WEBHOOK_URL):
        print("⚠️  No Discord/Slack webhook configured; notifications are disabled")
    print("✅ Configuration OK")
    return True


def run_server(host: str = "0.0.0.0", port: int = 8080, reload: bool = False):
    """Run the FastAPI server."""
    import uvicorn

    print(f"🚀 Starting server on {host}:{port}")
    uvicorn.run(
        "api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


async def run_workers():
    """Run both worker pools until interrupted."""
    from api.database import init_database
    from api.queue_worker import build_worker_pools
    from monitoring.events import EventBus
    from monitoring.notifications import notifications

    await init_database()
    bus = EventBus()
    pools = build_worker_pools(event_bus=bus, notifier=notifications)
    for pool in pools:
        pool.start()
    logger.info("Workers running, press Ctrl+C to stop")

    try:
        await asyncio.Event().wait()
    finally:
        for pool in pools:
            await pool.stop()
        bus.close()
        logger.info("Workers stopped")


async def enqueue_job(client: str, terms, locations, result_cap: int = None, grid_size: int = None, fields=None):
    """Create a job and put it on the scrape queue."""
    from api.database import init_database
    from api.job_service import create_job

    await init_database()
    job = await create_job(
        client,
        terms,
        locations=locations,
        result_cap=result_cap,
        fields=fields,
        grid_size=grid_size,
    )
    logger.info(f"✅ Job {job.id} queued: {len(job.search_terms)} terms, "
                f"{len(job.effective_locations())} locations, ~{job.estimated_duration}s")
    return job


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Map Scraper - bulk map-search scraping service"
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Server command
    server_parser = subparsers.add_parser('server', help='Run API server')
    server_parser.add_argument('--host', default='0.0.0.0', help='Host to bind to')
    server_parser.add_argument('--port', type=int, default=8080, help='Port to bind to')
    server_parser.add_argument('--reload', action='store_true', help='Enable auto-reload')

    # Worker command
    subparsers.add_parser('worker', help='Run worker pools without the API')

    # Enqueue command
    enqueue_parser = subparsers.add_parser('enqueue', help='Create and queue a job')
    enqueue_parser.add_argument('--client', required=True, help='Client name')
    enqueue_parser.add_argument('--term', action='append', required=True, help='Search term (repeatable)')
    enqueue_parser.add_argument('--location', action='append', default=[], help='Location (repeatable)')
    enqueue_parser.add_argument('--cap', type=int, help='Result cap per term/location')
    enqueue_parser.add_argument('--grid', type=int, help='Split the first location into an N x N grid')
    enqueue_parser.add_argument('--fields', help='Comma-separated field groups to export')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    # Check environment
    if not check_environment():
        sys.exit(1)

    # Run command
    if args.command == 'server':
        run_server(args.host, args.port, args.reload)

    elif args.command == 'worker':
        try:
            asyncio.run(run_workers())
        except KeyboardInterrupt:
            pass

    elif args.command == 'enqueue':
        fields = [f.strip() for f in args.fields.split(',')] if args.fields else None
        try:
            asyncio.run(enqueue_job(args.client, args.term, args.location, args.cap, args.grid, fields))
        except ValueError as e:
            print(f"❌ {e}")
            sys.exit(2)


if __name__ == "__main__":
    main()
