import argparse
import json
import logging
import sys

from .setting import get_settings


def setup_logging(log_level: str = "INFO") -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.ERROR)
    logging.getLogger("sqlalchemy.engine.Engine").setLevel(logging.ERROR)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.orm").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("backoff").setLevel(logging.ERROR)


logger = logging.getLogger(__name__)


def _init_db(database_url: str):
    from .core.db import DatabaseManager, wait_for_db

    db_manager = DatabaseManager(database_url, echo=get_settings().database.echo)
    wait_for_db(db_manager)
    db_manager.init_db()
    return db_manager


def cmd_init_db(args) -> int:
    db_manager = _init_db(args.database_url or get_settings().database.url)
    logger.info("Database schema created")
    db_manager.dispose()
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    from .api.app import create_app
    from .core.analysis.sources import InMemoryCommitSource, StaticDiffProvider
    from .core.jobs import AnalysisOrchestrator
    from .core.llm import configure_llm

    settings = get_settings()
    db_manager = _init_db(args.database_url or settings.database.url)
    llm = configure_llm(settings.review)

    # The commit store and VCS API are provided by the host deployment;
    # standalone serving starts with empty sources.
    orchestrator = AnalysisOrchestrator(
        db_manager,
        InMemoryCommitSource({}),
        StaticDiffProvider(),
        llm=llm,
        settings=settings,
        background=True,
    )
    orchestrator.recover_interrupted()
    worker = orchestrator._ensure_worker()

    app = create_app(db_manager=db_manager, orchestrator=orchestrator, worker=worker)
    logger.info(f"Starting WorkLoom API on {args.host}:{args.port}")
    try:
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    finally:
        worker.stop()
        db_manager.dispose()
    return 0


def cmd_demo(args) -> int:
    from .core.analysis.sources import InMemoryCommitSource, StaticDiffProvider
    from .core.db import DatabaseManager
    from .core.jobs import AnalysisOrchestrator
    from .demo import DEMO_ORG, DEMO_USER, DEMO_YEAR, DemoReviewLLM, alice_commits, alice_patches

    db_manager = DatabaseManager("sqlite:///:memory:")
    db_manager.init_db()

    commits = alice_commits()
    orchestrator = AnalysisOrchestrator(
        db_manager,
        InMemoryCommitSource({DEMO_ORG: commits}),
        StaticDiffProvider(patches=alice_patches(commits)),
        llm=DemoReviewLLM(),
        settings=get_settings().with_overrides({"review": {"base_backoff_seconds": 0}}),
    )

    run = orchestrator.create_run(DEMO_ORG, DEMO_USER, DEMO_YEAR)
    status = orchestrator.start(run["run_id"])
    status["work_units"] = [
        {k: u[k] for k in ("repo_name", "title", "commit_count", "impact_score", "is_sampled")}
        for u in orchestrator.list_units(run["run_id"])
    ]
    print(json.dumps(status, indent=2, default=str))
    db_manager.dispose()
    return 0 if status["status"] == "DONE" else 1


def main():
    """Main entry point for WorkLoom."""
    parser = argparse.ArgumentParser(description="WorkLoom - Yearly developer performance analysis")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", type=str, default="0.0.0.0", help="Bind address")
    serve.add_argument("--port", type=int, default=9010, help="Port for the API server")
    serve.add_argument("--database-url", type=str, default=None, help="Override DATABASE_URL")
    serve.set_defaults(func=cmd_serve)

    init_db = subparsers.add_parser("init-db", help="Create database tables")
    init_db.add_argument("--database-url", type=str, default=None, help="Override DATABASE_URL")
    init_db.set_defaults(func=cmd_init_db)

    demo = subparsers.add_parser("demo", help="Run the alice 2024 scenario in memory")
    demo.set_defaults(func=cmd_demo)

    args = parser.parse_args()
    setup_logging(args.log_level)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
