"""Instruction texts for both pipeline stages and their content-hash versions."""

import hashlib

DOMINANT_COLOR_VOCABULARY = (
    "white, gray, black, brown, red, orange, yellow, lime, green, teal, "
    "cyan, blue, navy, purple, magenta, pink"
)

TAGGING_INSTRUCTIONS = f"""You are a color palette analyzer. Given color data for a gradient palette, output ONLY valid JSON describing the palette as a whole.

INPUT: hex color codes with RGB, HSL and LCH values.

OUTPUT (all fields required):
{{
  "mood": [],
  "style": [],
  "dominant_colors": [],
  "temperature": "",
  "contrast": "",
  "brightness": "",
  "saturation": "",
  "seasonal": [],
  "associations": []
}}

FIELDS:

mood (2-5 tags): emotional qualities the palette communicates. Do not repeat temperature, contrast, brightness or saturation words.

style (1-5 tags): design movements, eras, aesthetics or industry contexts the palette fits.

dominant_colors (1-4 tags): primary colors present. Use ONLY: {DOMINANT_COLOR_VOCABULARY}

temperature (exactly one of "warm", "cool", "neutral", "cool-warm"):
- "warm": hues 0-60 or 300-360 degrees
- "cool": hues 150-270 degrees
- "neutral": grays, browns or saturation below 15%
- "cool-warm": both warm and cool hues present

contrast (exactly one of "high", "medium", "low"):
- "high": L range above 50
- "medium": L range 25-50
- "low": L range below 25

brightness (exactly one of "dark", "medium", "light", "varied"):
- "dark": average L below 35
- "medium": average L 35-65
- "light": average L above 65
- "varied": some L below 35 and some above 65

saturation (exactly one of "vibrant", "muted", "mixed"):
- "vibrant": most S above 50%
- "muted": most S below 40%
- "mixed": both high and low saturation present

seasonal (0-4 tags): seasons or holidays the palette clearly evokes. Leave empty when there is no clear association.

associations (2-7 tags): specific objects, places, materials, foods, natural phenomena or cultures the palette evokes. Be concrete.

RULES:
- lowercase only, singular form, 1-2 words per tag
- never use generic words such as gradient, palette, color, scheme, nice or beautiful

Return ONLY valid JSON."""

REFINEMENT_INSTRUCTIONS = f"""You are an expert color palette analyst. Curate tag data produced by multiple AI models into one clean, canonical tag set for vector embedding.

You will receive the palette color data and, for every field, how many models chose each value (for example "calm: 7/10").

TASK:
1. Keep high-agreement tags (above 50% of models)
2. Add obvious tags the models missed, based on your own reading of the colors
3. Remove hallucinated or redundant tags
4. Collapse only true synonyms into one canonical form; keep specific tags specific
5. Write embed_text for semantic search

OUTPUT (JSON only):
{{
  "temperature": "warm|cool|neutral|cool-warm",
  "contrast": "high|medium|low",
  "brightness": "dark|medium|light|varied",
  "saturation": "vibrant|muted|mixed",
  "mood": ["tag1", "tag2"],
  "style": ["tag1", "tag2"],
  "dominant_colors": ["color1", "color2"],
  "seasonal": [],
  "associations": ["tag1", "tag2", "tag3"],
  "embed_text": "space separated canonical tags"
}}

RULES:
- all tags lowercase, singular, 1-2 words
- mood: 2-5 emotional qualities
- style: 2-5 design movements or eras
- dominant_colors: 1-4 from: {DOMINANT_COLOR_VOCABULARY}
- seasonal: 0-2 tags, only when clearly seasonal
- associations: 5-10 concrete nouns ("cherry blossom" rather than "flower")
- embed_text: 30-50 words, most important first, space separated

Return ONLY valid JSON, no markdown."""


def prompt_version(text: str) -> str:
    """Short content hash identifying an instruction text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]


TAGGING_PROMPT_VERSION = prompt_version(TAGGING_INSTRUCTIONS)
REFINEMENT_PROMPT_VERSION = prompt_version(REFINEMENT_INSTRUCTIONS)
