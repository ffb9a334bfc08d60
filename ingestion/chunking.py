"""
Chunk Controller - bounded, resumable slices of a chunkable stage
"""

from typing import Dict, Optional
import logging

from core.config import settings
from core.exceptions import StageConfigurationError
from ingestion.stages.base import SyncStage
from models.base import StageName
from schemas.sync import StageOptions, StageResult

logger = logging.getLogger(__name__)


class ChunkController:
    """
    Run at most `max_units_per_chunk` pages of a stage per call.

    The controller never loops or retries by itself: the caller re-invokes
    with the returned `continue_from` until `is_complete` is True. Running
    the same chunk twice is safe because every write is an upsert.
    """

    def __init__(self, stages: Dict[StageName, SyncStage], default_max_pages: Optional[int] = None):
        self.stages = stages
        self.default_max_pages = default_max_pages or settings.CHUNK_MAX_PAGES

    def chunkable_stages(self):
        return [name for name, stage in self.stages.items() if stage.chunkable]

    def _resolve(self, stage_name: StageName) -> SyncStage:
        stage = self.stages.get(stage_name)
        if stage is None:
            raise StageConfigurationError(
                f"Unknown stage: {stage_name}",
                context={"stage": str(stage_name)}
            )
        if not stage.chunkable:
            raise StageConfigurationError(
                f"Stage {stage_name.value} does not support chunking",
                context={
                    "stage": stage_name.value,
                    "chunkable_stages": [s.value for s in self.chunkable_stages()]
                }
            )
        return stage

    async def run_chunk(
        self,
        stage_name: StageName,
        max_units_per_chunk: Optional[int] = None,
        continue_from: Optional[str] = None,
        execution_id: Optional[int] = None,
        force: bool = False
    ) -> StageResult:
        """
        Run one chunk.

        Raises:
            StageConfigurationError: Unknown or non-chunkable stage, or a
                non-positive page budget
        """
        stage = self._resolve(stage_name)

        max_pages = self.default_max_pages if max_units_per_chunk is None else max_units_per_chunk
        if max_pages < 1:
            raise StageConfigurationError(
                "max_units_per_chunk must be at least 1",
                context={"stage": stage_name.value, "max_units_per_chunk": max_units_per_chunk}
            )

        logger.info(
            f"Chunk for {stage_name.value}: max_pages={max_pages}, "
            f"continue_from={continue_from or 'start'}"
        )

        result = await stage.run(StageOptions(
            max_pages=max_pages,
            continue_from=continue_from,
            execution_id=execution_id,
            force=force,
        ))
        result.metadata["max_pages"] = max_pages
        return result
