#!/usr/bin/env python3
"""Schema sync sweep: bring schema embeddings up to date for every active data source.

Sources whose embeddings are newer than their schemas are skipped unless SYNC_FORCE=1.
One failing source is logged and does not stop the sweep. Exit code 1 if any source failed.

Run: python -m cron.schema_sync_sweep
Env: DATA_SOURCE_IDS (comma-separated; empty = all active), SYNC_FORCE.
"""

import sys

from apps.nl2sql.services.schema_sync import SchemaSyncService, get_schema_sync_service
from cron.config import config
from cron.logging import get_logger

logger = get_logger("schema_sync_sweep")


def main(service: SchemaSyncService | None = None) -> int:
    svc = service or get_schema_sync_service()
    ids = config.DATA_SOURCE_IDS or None
    logger.info("schema_sync_sweep start data_sources=%s force=%s", ids or "all", config.SYNC_FORCE)

    result = svc.sync_all_data_sources(ids, force=config.SYNC_FORCE)

    for report in result.reports:
        if report.skipped:
            logger.info("data_source=%s up to date", report.data_source_id)
            continue
        logger.info(
            "data_source=%s schemas=%s/%s embeddings=%s failed_schemas=%s",
            report.data_source_id,
            report.schemas_embedded,
            report.schemas_total,
            report.embeddings_created,
            report.schemas_failed,
        )
    for ds_id, error in result.failed.items():
        logger.error("data_source=%s FAIL %s", ds_id, error)

    logger.info("schema_sync_sweep done synced=%s failed=%s", len(result.reports), len(result.failed))
    return 1 if result.failed else 0


if __name__ == "__main__":
    sys.exit(main())
