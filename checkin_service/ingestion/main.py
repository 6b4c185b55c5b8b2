from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import os

from checkin_service.ingestion.cli import build_parser
from checkin_service.ingestion.config import IngestConfig
from checkin_service.ingestion.matcher import RosterSnapshot
from checkin_service.jobs.batch import JOB_KIND
from checkin_service.logging_config import setup_logging
from checkin_service.services import Services, build_services
from checkin_service.stores.file_host import DriveCredentials

logger = logging.getLogger("checkin_service.ingestion")


def _config_from_args(args: argparse.Namespace) -> IngestConfig:
    cfg = IngestConfig.from_env()
    overrides: dict[str, object] = {"subscribe_grace_seconds": 0.0}
    if args.pages_per_student is not None:
        overrides["pages_per_student"] = args.pages_per_student
    if args.format:
        overrides["upload_format"] = args.format
    if args.keep_source:
        overrides["delete_source_after_job"] = False
    return dataclasses.replace(cfg, **overrides)  # type: ignore[arg-type]


async def _dry_run(services: Services, object_key: str) -> int:
    data = await asyncio.to_thread(services.object_store.download, object_key)
    segmenter = services.batch.segmenter
    matcher = services.batch.matcher
    snapshot = RosterSnapshot(await services.roster.read_students())

    matched = 0
    with await asyncio.to_thread(segmenter.open, data) as pdf:
        for segment in pdf:
            result = matcher.match(segment.token, snapshot)
            if result.matched:
                matched += 1
            logger.info(
                "[DRY-RUN] pages %d-%d id=%s %s -> %s %s",
                segment.first_page + 1,
                segment.last_page + 1,
                (segment.token.identifier if segment.token else None) or "-",
                segment.display_name,
                result.status.value,
                result.student_id or "",
            )
        total = len(pdf)

    logger.info("[DRY-RUN] %d of %d segments match the roster", matched, total)
    return 0


async def _amain() -> int:
    parser = build_parser()
    args = parser.parse_args()

    setup_logging(level=args.log_level.upper())

    services = build_services(_config_from_args(args))
    try:
        if args.dry_run:
            return await _dry_run(services, args.object_key)

        access_token = args.access_token or os.getenv("CHECKIN_DRIVE_ACCESS_TOKEN")
        if not access_token:
            logger.error("A Drive access token is required (--access-token)")
            return 2
        credentials = DriveCredentials(
            access_token=access_token,
            refresh_token=args.refresh_token or os.getenv("CHECKIN_DRIVE_REFRESH_TOKEN"),
        )

        job_id = await services.batch.start(args.object_key, credentials)
        subscription = services.stream.subscribe(job_id, kind=JOB_KIND)

        exit_code = 2
        async for event in subscription.events():
            if event.error:
                logger.error("FAILED %s", event.error)
            elif event.done:
                logger.info("DONE %s", event.message)
                if event.summary is not None:
                    logger.info("summary=%s", event.summary.model_dump_json(by_alias=True))
                exit_code = 0
            else:
                logger.info("[%3d%%] %s", event.progress or 0, event.message)
        return exit_code
    finally:
        await services.aclose()


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
