from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

DEFAULT_STYLE = "watercolor"

# One descriptor phrase per supported art style. Read-only at runtime.
STYLE_PROMPTS: Mapping[str, str] = MappingProxyType(
    {
        "watercolor": "watercolor painting style, soft colors, gentle brushstrokes",
        "cartoon": "cartoon style, bright colors, simple shapes",
        "oil": "oil painting style, rich textures, vibrant colors",
        "anime": "anime style, Japanese animation, detailed characters",
        "flat": "flat illustration style, minimalist, clean lines",
        "3d": "3D rendered style, realistic lighting, depth",
    }
)

ILLUSTRATION_PREFIX = "Children's book illustration"
ILLUSTRATION_SUFFIX = "safe for children, no text, high quality"


def style_phrase(style: str, *, styles: Mapping[str, str] = STYLE_PROMPTS) -> str:
    """Descriptor phrase for ``style``; unknown styles fall back to the default style."""
    return styles.get(style) or styles[DEFAULT_STYLE]


def build_illustration_prompt(
    image_prompt: str,
    style: str,
    *,
    styles: Mapping[str, str] = STYLE_PROMPTS,
) -> str:
    """Combine the fixed children's-book framing, the scene, and the style phrase."""
    scene = " ".join(image_prompt.split())
    return (
        f"{ILLUSTRATION_PREFIX}, {scene}, "
        f"{style_phrase(style, styles=styles)}, {ILLUSTRATION_SUFFIX}"
    )
