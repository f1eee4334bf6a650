from __future__ import annotations

import argparse
import time
import uuid

from activity_engine import create_app
from activity_engine.config import Config
from activity_engine.contexts.principal_activity.application.engine import PrincipalActivityEngine, get_engine
from activity_engine.errors import AppError, SnapshotStoreCorruptedError
from activity_engine.observability import bind_request_id


class _WorkerConfig(Config):
    REFRESH_SCHEDULER_ENABLED = False
    DB_AUTO_INIT = False


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rebuilds principal activity snapshots outside the web process.")
    parser.add_argument("--principal-id", action="append", default=[], help="Principal to rebuild (repeatable).")
    parser.add_argument("--all", action="store_true", help="Rebuild every active principal.")
    parser.add_argument("--loop", action="store_true", help="Keep running batches until interrupted.")
    parser.add_argument("--interval", type=int, default=0, help="Seconds between batches with --loop.")
    return parser


def _run_once(engine: PrincipalActivityEngine, principal_ids: list[str]) -> dict:
    summary = {"processed": 0, "succeeded": 0, "discarded": 0, "failed": 0}
    for principal_id in principal_ids:
        summary["processed"] += 1
        try:
            version = engine.rebuild_in_context(principal_id)
        except SnapshotStoreCorruptedError:
            raise
        except AppError as exc:
            summary["failed"] += 1
            engine.app.logger.warning(
                "principal_rebuild_failed",
                extra={"principal_id": principal_id, "error_code": exc.code, "details": exc.details},
            )
            continue
        if version is None:
            summary["discarded"] += 1
        else:
            summary["succeeded"] += 1
    return summary


def _resolve_principal_ids(engine: PrincipalActivityEngine, args) -> list[str]:
    explicit = [str(item).strip() for item in args.principal_id if str(item).strip()]
    if args.all or not explicit:
        known = engine.active_principal_ids()
        stale = [snapshot.principal_id for snapshot in engine.store.list_current() if snapshot.principal_id not in known]
        return list(dict.fromkeys([*explicit, *known, *stale]))
    return list(dict.fromkeys(explicit))


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    app = create_app(_WorkerConfig)
    engine = get_engine(app)

    configured_interval = int(app.config.get("REFRESH_WORKER_INTERVAL_SECONDS", 60) or 60)
    interval_seconds = max(1, int(args.interval or configured_interval))

    while True:
        run_request_id = f"worker-{uuid.uuid4().hex[:12]}"
        with bind_request_id(run_request_id):
            engine.sync_from_repository()
            principal_ids = _resolve_principal_ids(engine, args)
            summary = _run_once(engine, principal_ids)
            app.logger.info(
                "principal_refresh_worker_batch_completed",
                extra={
                    "request_id": run_request_id,
                    "principals": len(principal_ids),
                    "processed": summary["processed"],
                    "succeeded": summary["succeeded"],
                    "discarded": summary["discarded"],
                    "failed": summary["failed"],
                },
            )
        if not args.loop:
            break
        time.sleep(interval_seconds)

    return 0 if summary["failed"] == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
