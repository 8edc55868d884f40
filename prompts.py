"""Prompt templates for every generation-service operation.

Both providers share these texts so that switching provider changes the model,
not the creative brief.
"""

from __future__ import annotations

import random
from typing import Optional

from models import KnowledgeBaseCategory

# ---------------------------------------------------------------------------
# Shared directives
# ---------------------------------------------------------------------------

def base_directives() -> str:
    return (
        "# CORE DIRECTIVES (NON-NEGOTIABLE):\n"
        "## STRICT OUTPUT FORMAT:\n"
        "- **Aspect Ratio:** The output image MUST be a **3:4 vertical portrait**. "
        "Do not generate landscape or square images.\n"
    )


# ---------------------------------------------------------------------------
# Watermarks
# ---------------------------------------------------------------------------

WATERMARK_REMOVAL_PROMPT = """\
# ROLE: Inpainting & Artifact Removal Specialist

# TASK:
Inspect the four corner regions of the image (about 20% of width and height each).
Remove any artificial overlay found there: text, watermarks, logos, UI frames or
platform stamps. Rebuild the covered background from the surrounding pixels.

# DETECTION ZONES:
1. Top-left (0-20% W, 0-20% H)
2. Top-right (80-100% W, 0-20% H)
3. Bottom-left (0-20% W, 80-100% H)
4. Bottom-right (80-100% W, 80-100% H)

# RESTORATION RULES:
- Do NOT invent new objects and do NOT change the composition.
- Gradients continue smoothly; patterns and textures are tiled along their grain;
  complex detail is filled with noise matching the camera grain.

# OUTPUT:
Return only the restored image. The corners must blend invisibly with the scene.
"""

WATERMARK_DETECTION_PROMPT = """\
# ROLE: Image Quality & Content Analyzer
# TASK: Analyze the image for two criteria:
1. **Watermarks:** Check the four corners for visible watermarks, logos, text overlays
   or platform stamps.
2. **Main subject:** Identify the main subject (it occupies more than 45% of the frame
   and sits centrally). It is either a product (shoes, clothes, watch, ...) or a
   combination (person + clothes + shoes). Describe it concisely.

# OUTPUT FORMAT:
Return ONLY a JSON object:
{
  "hasWatermark": true,
  "subjectDescription": "description of the main subject, or an empty string"
}
"""


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def analysis_prompt(image_count: int) -> str:
    return f"""\
# ROLE: Senior Visual Asset Aggregator & Synthesizer

# TASK:
Analyze the {image_count} reference image(s). Separate what is SHARED by every output
(the subject, its details, the scene and the visual quality) from what VARIES per
image (the subject reference, the action or pose, the camera angle).

# RULES:
- Describe only what is visible. If a face is hidden or cropped, say so explicitly.
- When a field does not apply (e.g. no human in a product shot) use the string "null".
- Produce one variable element per image, in input order.

# OUTPUT FORMAT:
Return only JSON, no commentary:
{{
  "consistent_elements": {{
    "synthesized_definition": {{
      "subject_type": "product | person | combination",
      "subject_summary": "one-sentence summary of the subject",
      "core_subject_details": "materials, colours, construction, brand marks",
      "human_features": "ethnicity, build, hair, styling, or null",
      "scene_atmosphere": "location, background, mood, or null",
      "visual_quality": "photographic style, lighting, lens, image quality"
    }}
  }},
  "inconsistent_elements": [
    {{
      "image_index": 1,
      "subject_ref": "short name of the subject shown",
      "action_and_pose": "what the subject is doing / how it is posed",
      "camera_angle": "viewpoint, framing and crop"
    }}
  ]
}}
"""


KB_ANALYSIS_PROMPT = f"""\
# ROLE: Senior Prompt Engineer & Image Deconstruction Expert

# TASK:
Analyze the image twice. First write one complete, highly detailed holistic
description from which the scene, person, atmosphere and style could be rebuilt.
Then cut that description into reusable prompt fragments per category.

# CATEGORIES:
- {KnowledgeBaseCategory.POSE.value}: posture, body orientation, gestures, gaze and expression.
- {KnowledgeBaseCategory.SCENE.value}: environment, location, background elements, props.
- {KnowledgeBaseCategory.COMPOSITION.value}: framing, camera height and angle, lens and crop.
- {KnowledgeBaseCategory.LIGHTING.value}: light sources, direction, quality, colour temperature.
- {KnowledgeBaseCategory.CLOTHING.value}: garments top to bottom, accessories, hair and make-up.
- {KnowledgeBaseCategory.STYLE.value}: overall artistic style, grading and post-processing.

# OUTPUT FORMAT:
Return only JSON:
{{
  "holistic_description": "...",
  "fragments": {{
    "{KnowledgeBaseCategory.POSE.value}": "...",
    "{KnowledgeBaseCategory.SCENE.value}": "...",
    "{KnowledgeBaseCategory.COMPOSITION.value}": "...",
    "{KnowledgeBaseCategory.LIGHTING.value}": "...",
    "{KnowledgeBaseCategory.CLOTHING.value}": "...",
    "{KnowledgeBaseCategory.STYLE.value}": "..."
  }}
}}
"""

# Plain-text variant for vision models without a JSON mode; the answer is
# split with instructions.fragments_from_understanding().
IMAGE_UNDERSTANDING_PROMPT = """\
You are an image-understanding agent that writes prompts for image generation models.
Describe the attached image so that it can be recreated as closely as possible.

Answer with plain text only (no JSON, no numbered lists). Start with one line of
quality and style tags, then write these sections in this exact order, each opened
by its bracketed title on its own line:

[Subject]
[Pose & Action]
[Scene & Environment]
[Composition & Camera]
[Lighting & Atmosphere]
[Clothing & Styling]
[Style & Post-processing]

Be concrete and objective. Do not invent brands, places or identities that are not
visible. State what the image is NOT (e.g. not illustration, not anime) where useful.
"""

VISION_SYSTEM_PROMPT = (
    "You are a meticulous visual analyst for a commercial photo studio. "
    "Follow the requested output format exactly."
)


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def master_prompt(consistent_prompt: str, variable_prompt: str) -> str:
    return f"""\
# ROLE: High-Fidelity Image Synthesis Specialist

# TASK:
Generate a "Master Image" that strictly follows the visual information in the
reference images and the text of the prompts. It is the visual benchmark for an
entire series.

{base_directives()}
## STRICT ELEMENT BOUNDARY (CLOSED WORLD):
- The output may ONLY contain elements taken from the reference images or named in
  the prompts.
- Do NOT add subjects that are not in those sources: a product reference with no
  human in the prompt means no model, hands or face.
- If the prompts describe no scene, use a neutral studio background.

## VISUAL CONSISTENCY:
- Preserve structure, material and identity of the main subject from the references.
- Apply the consistent style and atmosphere only to valid subjects.

# CREATIVE BRIEF:
## Consistent Content:
{consistent_prompt}

## Variable Content:
{variable_prompt}

# FINAL CHECK:
- A face or body that is not in the references or prompts must be removed.
- A background scene that was not requested must be removed.
"""


def modify_prompt(consistent_prompt: str, variable_prompt: str, instruction: str) -> str:
    return f"""\
# ROLE: AI Photo Editor & Retoucher

# TASK:
Modify the provided master image according to the request below while keeping the
products exactly as they appear in the reference images.

# MODIFICATION REQUEST:
"{instruction}"

{base_directives()}
# ORIGINAL CREATIVE BRIEF (for context):
## Consistent Elements:
{consistent_prompt}

## Variable Elements:
{variable_prompt}

# OUTPUT:
A new version of the master image that incorporates the modification request.
"""


def series_prompt(
    consistent_prompt: str,
    variable_prompt: str,
    is_regeneration: bool = False,
    variation_seed: Optional[float] = None,
) -> str:
    """Prompt for one derived shot; regeneration adds a fresh variation seed."""
    prompt = f"""\
# ROLE: AI Scene Director & Consistency Enforcer

# TASK:
Generate the shot described by [Variable Content] while inheriting every visual
asset from [Consistent Content] and from the master image.

# INHERITANCE & OVERWRITE PROTOCOL:
## RULE 1: ASSET INHERITANCE (who and where, hard lock)
- Source: [Consistent Content] and the master image.
- The model's face, body type and hair, and the product's design and material are
  immutable. The location stays the same unless explicitly changed.
- Do not invent new clothes or change the model's features.

## RULE 2: STATE OVERWRITE (how, high priority)
- Source: [Variable Content].
- It defines camera angle, framing, pose and focus. When it conflicts with the
  general description in [Consistent Content], the variable content wins.
- Cropping out the head or body is allowed if the shot asks for a detail close-up.

{base_directives()}
# INPUT DATA:
## Consistent Content (the assets):
{consistent_prompt}

## Variable Content (the director's shot):
{variable_prompt}
"""
    if is_regeneration:
        seed = variation_seed if variation_seed is not None else random.random()
        prompt += (
            "\n- **Creative Variation:** produce a new, distinct take on this shot "
            f"while following every directive. Random seed: {seed}\n"
        )
    return prompt


def fusion_note() -> str:
    """Appended when a unit carries its own reference image."""
    return (
        "\n# ADDITIONAL REFERENCE:\n"
        "The last input image is a per-shot reference. Take pose, props or styling "
        "cues from it, but keep identity and products from the master image.\n"
    )
