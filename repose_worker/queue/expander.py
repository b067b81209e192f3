"""Run expander: turns a run (one look) into queued generation outputs."""

import logging
import random
from typing import List, Optional

from repose_worker.queue.classify import classify_item, eligible_poses, shot_types_for
from repose_worker.queue.records import BatchItem, OutputRecord, OutputStatus, RunRecord
from repose_worker.queue.store import ReposeStore

logger = logging.getLogger(__name__)


class ExpansionError(Exception):
    """Raised when a run cannot be expanded (no pose library, no usable poses)."""


class RunExpander:
    """Selects clay poses for every (batch item, shot type) of a run."""

    def __init__(self, store: ReposeStore, rng: Optional[random.Random] = None):
        self._store = store
        self._rng = rng or random.Random()

    async def resolve_items(self, run: RunRecord) -> List[BatchItem]:
        """Batch items for the run's look.

        Items match directly on ``look_id``, or indirectly when their source
        job output was produced by a job for the same look.
        """
        items = await self._store.list_batch_items(run.batch_id)
        matched = [item for item in items if item.look_id == run.look_id]
        matched_ids = {item.id for item in matched}

        source_ids = [item.source_output_id for item in items if item.source_output_id]
        if source_ids:
            output_looks = await self._store.map_source_outputs_to_looks(source_ids)
            for item in items:
                if item.id in matched_ids:
                    continue
                if output_looks.get(item.source_output_id or "") == run.look_id:
                    matched.append(item)
                    matched_ids.add(item.id)
        return matched

    async def expand(self, run: RunRecord) -> List[OutputRecord]:
        """Create and persist the outputs for *run*.

        Returns an empty list when the look has no batch items. Raises
        ExpansionError when the brand has no library or no usable poses.
        """
        items = await self.resolve_items(run)
        if not items:
            logger.info("run %s: no batch items for look %s", run.id, run.look_id)
            return []

        product_type = None
        if run.look_id:
            product_type = await self._store.get_look_product_type(run.look_id)
        product_type = product_type or "top"

        brand_id = run.effective_brand_id
        library_id = await self._store.get_library_id(brand_id) if brand_id else None
        if not library_id:
            raise ExpansionError("No pose library found for brand")

        poses = await self._store.list_usable_poses(library_id)
        if not poses:
            raise ExpansionError("No usable poses found in library")
        logger.info("run %s: found %d usable poses", run.id, len(poses))

        per_type = run.poses_per_shot_type
        to_create: List[OutputRecord] = []
        for item in items:
            view_class = classify_item(item.view, item.source_url)
            for shot_type in shot_types_for(view_class):
                candidates, widened = eligible_poses(poses, shot_type, product_type)
                if widened:
                    logger.info(
                        "run %s: no %s-tagged poses for %s, using all %d slot poses",
                        run.id, product_type, shot_type.value, len(candidates),
                    )
                selected = self._rng.sample(candidates, min(per_type, len(candidates)))
                for pose in selected:
                    clay = pose.clay_image
                    if clay is None or not clay.id or not clay.stored_url:
                        continue
                    to_create.append(OutputRecord(
                        batch_id=run.batch_id,
                        batch_item_id=item.id,
                        run_id=run.id,
                        pose_id=clay.id,
                        pose_url=clay.stored_url,
                        shot_type=shot_type,
                        attempt_index=0,
                        status=OutputStatus.QUEUED,
                    ))

        if not to_create:
            logger.info("run %s: no outputs to create", run.id)
            return []

        logger.info("run %s: creating %d outputs", run.id, len(to_create))
        return await self._store.insert_outputs(to_create)
