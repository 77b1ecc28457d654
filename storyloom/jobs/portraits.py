"""Character portrait generation for the character bible."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

from storyloom.context.assembler import load_story_context
from storyloom.errors import (
    CharacterNotFoundError,
    InvalidTaskParametersError,
    PersistenceError,
    TimelineNotFoundError,
)
from storyloom.llm.invoker import validate_image_mime
from storyloom.observability.logging import get_logger
from storyloom.observability.telemetry import counter, log_event, time_block
from storyloom.prompts.tasks import PortraitImageTask

if TYPE_CHECKING:
    from storyloom.context.models import CharacterReference
    from storyloom.governance.usage import UsageRecorder
    from storyloom.llm.invoker import GeminiInvoker
    from storyloom.storage.graph import GraphStore

logger = get_logger(__name__)

PORTRAIT_USAGE_ENDPOINT = "/api/timelines/characters/generate-portrait"


def generate_portrait(
    store: GraphStore,
    invoker: GeminiInvoker,
    timeline_id: str,
    character_id: str,
    user_id: str,
    usage_recorder: UsageRecorder | None = None,
) -> CharacterReference:
    """
    Generate a reference portrait for a character and store it on the entry.

    Portraits are always generated synchronously; they are one-off and the
    result becomes the identity anchor for later scene images.

    Raises:
        TimelineNotFoundError: If the timeline does not exist
        CharacterNotFoundError: If the character is not in the timeline
        InvalidTaskParametersError: If the character has no appearance guide
        PersistenceError: If the portrait could not be saved
    """
    if store.get_story_context(timeline_id) is None:
        raise TimelineNotFoundError(f"Timeline {timeline_id} not found")

    character = store.get_character(timeline_id, character_id)
    if character is None:
        raise CharacterNotFoundError(f"Character {character_id} not found")

    if not (character.appearance_guide or "").strip():
        raise InvalidTaskParametersError(
            "Character has no appearance guide. Add one before generating a portrait."
        )

    prompt = PortraitImageTask(
        character=character, story=load_story_context(store, timeline_id)
    ).compose()

    with time_block("jobs.portrait.latency"):
        image = invoker.generate_image(prompt)
    validate_image_mime(image.mime_type)
    data_url = image.to_data_url()

    try:
        updated = store.set_character_portrait(timeline_id, character_id, data_url)
    except sqlite3.Error as e:
        counter("jobs.portrait.persistence_failed")
        raise PersistenceError(f"Failed to save portrait for {character_id}: {e}") from e
    if not updated:
        counter("jobs.portrait.persistence_failed")
        raise PersistenceError(f"Character {character_id} no longer exists")

    if usage_recorder is not None:
        usage_recorder.record(user_id, PORTRAIT_USAGE_ENDPOINT)

    counter("jobs.portrait.completed")
    log_event("jobs.portrait.completed", timeline_id=timeline_id, character_id=character_id)
    return character.model_copy(update={"reference_image_url": data_url})
