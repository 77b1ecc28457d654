"""
Image prompt assembly.

Image models attend most to the opening and the closing lines of a prompt, so
the visual style guide goes first and a single hardest constraint goes last.
Everything is phrased affirmatively: describe the frame that should exist,
never list what must be left out, because naming an unwanted concept tends to
make it appear.
"""

from __future__ import annotations

from collections.abc import Sequence

from storyloom.context.models import CharacterReference, StoryContext

IMAGE_SECTION_SEPARATOR = "\n\n"


def _world_section(story: StoryContext | None) -> str | None:
    if story is None:
        return None
    if story.vision_blurb:
        return f"PROJECT WORLD:\n{story.vision_blurb}"
    if story.system_prompt:
        return f"PROJECT CONTEXT:\n{story.system_prompt}"
    return None


def build_setting_extraction_prompt(scene_text: str, story: StoryContext | None = None) -> str:
    sections = [
        "You are a location scout analyzing a scene from a cinematic narrative. Your task "
        "is to identify the physical environment where this scene takes place."
    ]
    world = _world_section(story)
    if world:
        sections.append(world)
    sections.append(f"SCENE TEXT:\n{scene_text}")
    sections.append("""INSTRUCTIONS:
Read the scene text above and describe WHERE this scene takes place in one vivid, specific sentence. Include sensory details such as lighting, weather, textures and time of day that an image model needs to render the environment accurately. If the scene text names a location, use it. If the location is implied, infer the most fitting environment from the project world and scene context.

Write the description as a single sentence of visual direction, e.g.:
"A rain-soaked cobblestone plaza in a baroque European city, amber streetlights reflected in shallow puddles, overcast dusk sky"

Return JSON: {"setting": "your one-sentence environment description"}

Ground your answer in the project world above. The setting must be consistent with the story's established world and tone.""")
    return IMAGE_SECTION_SEPARATOR.join(sections)


def build_character_extraction_prompt(scene_text: str, story: StoryContext | None = None) -> str:
    sections = [
        "You are a casting director analyzing a scene from a cinematic narrative. Your task "
        "is to identify every character who is physically present and visible in this scene."
    ]
    world = _world_section(story)
    if world:
        sections.append(world)
    sections.append(f"SCENE TEXT:\n{scene_text}")
    sections.append("""INSTRUCTIONS:
List every character (person, named entity, creature) who is physically present, visible, or actively participating in this scene. Include only characters explicitly mentioned or clearly implied by the text. A solitary moment, a landscape, or an empty location yields an empty array.

Return JSON: {"characters": ["Name1", "Name2"]}

Rules:
- Use the exact name as it appears in the text.
- List only characters who are physically in the scene; people who appear only in dialogue or memory belong to other scenes.
- If the text is ambiguous, lean toward including the character.
- An empty array is the correct answer when the scene contains only environment, narration, or abstract concepts.""")
    return IMAGE_SECTION_SEPARATOR.join(sections)


def _identity_block(character: CharacterReference) -> str:
    return f"[CHARACTER IDENTITY: {character.name}]\n{character.appearance_guide}"


def build_image_generation_prompt(
    scene_text: str,
    story: StoryContext,
    setting: str | None = None,
    characters: Sequence[str] = (),
    references: Sequence[CharacterReference] = (),
) -> str:
    """
    Final storyboard-frame prompt.

    Order: style guide, character identity blocks, project vision (or creative
    direction when there is no style guide), scene, environment, figures, and
    the closing constraint line.
    """
    if not scene_text or not scene_text.strip():
        raise ValueError("scene_text is required")

    sections: list[str] = []

    if story.visual_theme:
        sections.append(
            f"[STYLE GUIDE: follow this exactly for every visual decision]\n{story.visual_theme}"
        )

    identities = [ref for ref in references if ref.appearance_guide]
    sections.extend(_identity_block(ref) for ref in identities)

    if story.vision_blurb:
        sections.append(f"[PROJECT VISION: the world this frame belongs to]\n{story.vision_blurb}")
    elif story.system_prompt and not story.visual_theme:
        sections.append(f"[CREATIVE DIRECTION]\n{story.system_prompt}")

    sections.append(f"[SCENE: the content of this storyboard frame]\n{scene_text}")

    if setting:
        sections.append(f"[ENVIRONMENT: render this exact location]\n{setting}")

    if characters:
        block = (
            "[CHARACTERS PRESENT: show exactly these people]\n"
            f"{', '.join(characters)}. These are the only figures visible in the frame."
        )
        if identities:
            block += (
                " Each character's appearance matches their CHARACTER IDENTITY block above "
                "exactly: same face, build, hair, and wardrobe."
            )
        sections.append(block)
    else:
        sections.append(
            "[FIGURES: this scene is empty of people]\n"
            "The frame contains only the environment and objects."
        )

    constraint = "Generate a single storyboard frame as a cinematic photograph"
    if story.visual_theme:
        constraint += ", matching the style guide above precisely"
    constraint += ", with consistent lighting, color palette, and composition throughout."
    sections.append(constraint)

    return IMAGE_SECTION_SEPARATOR.join(sections)


def build_portrait_prompt(character: CharacterReference, story: StoryContext) -> str:
    """Reference portrait for a character bible entry.

    Raises:
        ValueError: If the character has no appearance guide
    """
    if not character.appearance_guide:
        raise ValueError("Character must have an appearance guide before generating a portrait")

    sections: list[str] = []

    if story.visual_theme:
        sections.append(
            f"[STYLE GUIDE: follow this exactly for every visual decision]\n{story.visual_theme}"
        )

    sections.append(_identity_block(character))

    if story.vision_blurb:
        sections.append(f"[PROJECT VISION: the world this character belongs to]\n{story.vision_blurb}")
    elif story.system_prompt and not story.visual_theme:
        sections.append(f"[CREATIVE DIRECTION]\n{story.system_prompt}")

    sections.append(
        "[COMPOSITION]\n"
        f"A character reference portrait of {character.name}: head and shoulders, facing the "
        "camera at a slight three-quarter angle, neutral background, even soft lighting."
    )

    constraint = f"Generate a single reference portrait of {character.name}"
    if story.visual_theme:
        constraint += " in the style guide above"
    constraint += ", with the appearance described in the identity block rendered exactly."
    sections.append(constraint)

    return IMAGE_SECTION_SEPARATOR.join(sections)
