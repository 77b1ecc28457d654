"""
Image job execution: scene text in, persisted storyboard frame out.

Steps for one job:
  1. load the timeline's visual grounding (style guide, vision, system prompt)
  2. extract setting and characters from the scene, concurrently; each
     extraction may fail on its own and the job carries on without it
  3. match extracted names to the character bible for identity blocks
  4. compose the final image prompt and generate the image
  5. persist the image on the node as a data URL and record usage
"""

from __future__ import annotations

import sqlite3
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from storyloom.context.assembler import load_story_context
from storyloom.context.models import StoryContext
from storyloom.errors import PersistenceError
from storyloom.infrastructure.settings import GEMINI_EXTRACTION_MODEL
from storyloom.jobs.models import (
    CharacterExtraction,
    ExtractedScene,
    ImageJob,
    SettingExtraction,
)
from storyloom.llm.invoker import GeminiInvoker, validate_image_mime
from storyloom.observability.logging import get_logger
from storyloom.observability.telemetry import counter, log_event, time_block
from storyloom.prompts.characters import match_characters
from storyloom.prompts.images import (
    build_character_extraction_prompt,
    build_setting_extraction_prompt,
)
from storyloom.prompts.tasks import SceneImageTask

if TYPE_CHECKING:
    from storyloom.governance.usage import UsageRecorder
    from storyloom.jobs.throttle import ThroughputLimiter
    from storyloom.storage.graph import GraphStore

logger = get_logger(__name__)

IMAGE_USAGE_ENDPOINT = "/api/jobs/images/generate"


class ImageJobExecutor:
    def __init__(
        self,
        store: GraphStore,
        invoker: GeminiInvoker,
        usage_recorder: UsageRecorder | None = None,
        throughput: ThroughputLimiter | None = None,
        extraction_model: str = GEMINI_EXTRACTION_MODEL,
    ) -> None:
        self.store = store
        self.invoker = invoker
        self.usage_recorder = usage_recorder
        self.throughput = throughput
        self.extraction_model = extraction_model

    def _extract_setting(self, scene_text: str, story: StoryContext) -> str | None:
        result = self.invoker.generate_structured(
            build_setting_extraction_prompt(scene_text, story),
            model=self.extraction_model,
            schema=SettingExtraction,
        )
        setting = result.data.setting.strip()
        return setting or None

    def _extract_characters(self, scene_text: str, story: StoryContext) -> list[str]:
        result = self.invoker.generate_structured(
            build_character_extraction_prompt(scene_text, story),
            model=self.extraction_model,
            schema=CharacterExtraction,
        )
        return [name.strip() for name in result.data.characters if name and name.strip()]

    def _settle(self, future: Future, name: str, default: Any) -> Any:
        # Extraction is enrichment; any failure degrades to the default
        try:
            return future.result()
        except Exception as e:
            counter(f"jobs.extraction.{name}_failed")
            logger.warning("Scene %s extraction failed, continuing without it: %s", name, e)
            return default

    def extract_scene(self, scene_text: str, story: StoryContext) -> ExtractedScene:
        """Run both extractions in parallel; each falls back independently."""
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="scene-extract") as pool:
            setting_future = pool.submit(self._extract_setting, scene_text, story)
            characters_future = pool.submit(self._extract_characters, scene_text, story)
            setting = self._settle(setting_future, "setting", None)
            characters = self._settle(characters_future, "characters", [])
        return ExtractedScene(setting=setting, characters=characters)

    def build_prompt(self, job: ImageJob) -> str:
        story = load_story_context(self.store, job.timeline_id)
        extracted = self.extract_scene(job.prompt, story)

        references = []
        if extracted.characters:
            references = match_characters(
                extracted.characters, self.store.list_characters(job.timeline_id)
            )

        return SceneImageTask(
            scene_text=job.prompt,
            story=story,
            setting=extracted.setting,
            characters=extracted.characters,
            references=references,
        ).compose()

    def execute(self, job: ImageJob) -> str:
        """
        Generate and persist the image for job. Returns the stored data URL.

        Raises:
            GenerationFailedError / UnparseableResponseError /
            UnsupportedImageFormatError: From the image call
            PersistenceError: If the node can no longer be written
        """
        log_event("jobs.execute.started", node_id=job.node_id, timeline_id=job.timeline_id)

        with time_block("jobs.execute.latency"):
            prompt = self.build_prompt(job)

            if self.throughput is not None:
                self.throughput.acquire()

            image = self.invoker.generate_image(prompt)
            mime_type = validate_image_mime(image.mime_type)
            data_url = image.to_data_url()

            try:
                updated = self.store.set_node_image(job.timeline_id, job.node_id, data_url)
            except sqlite3.Error as e:
                counter("jobs.execute.persistence_failed")
                raise PersistenceError(f"Failed to save image for node {job.node_id}: {e}") from e
            if not updated:
                counter("jobs.execute.persistence_failed")
                raise PersistenceError(f"Node {job.node_id} no longer exists")

        if self.usage_recorder is not None:
            self.usage_recorder.record(job.user_id, IMAGE_USAGE_ENDPOINT)

        counter("jobs.execute.completed")
        log_event("jobs.execute.completed", node_id=job.node_id, mime_type=mime_type)
        return data_url
