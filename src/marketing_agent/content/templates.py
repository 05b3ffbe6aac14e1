"""Tone and channel guidelines used to build the default system prompt."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from marketing_agent.constants import (
    CHANNEL_BLOG_AUTO,
    CHANNEL_BLOG_MANUAL,
    CHANNEL_IMAGE_FEED,
    CHANNEL_MICRO_POST,
)

ORGANIZATION_TONE: Dict[str, str] = {
    "environment": "Action-oriented and participatory, centred on everyday things readers can do",
    "education": "Trustworthy and informative, highlighting learning and concrete change stories",
    "human-rights": "Grounded in dignity and rights, fact-based messaging",
    "animal": "Empathetic, built around the change in the lives of the animals protected",
    "welfare": "Warm and caring, stressing the practical effect of support on the ground",
    "health": "Reassuring and evidence-based health guidance",
    "culture": "Evocative, connecting cultural experiences with the community",
    "community": "Friendly and local, encouraging people to take part",
    "international": "Solidarity and sustainability, emphasising global impact",
    "other": "Clear, sincere and explanatory",
}


@dataclass
class ChannelTemplate:
    objective: str
    cta_examples: List[str]
    structure_guide: List[str]


CHANNEL_TEMPLATES: Dict[str, ChannelTemplate] = {
    CHANNEL_BLOG_AUTO: ChannelTemplate(
        objective="Win search traffic and build trust at the same time.",
        cta_examples=["Become a monthly supporter", "Read more about the campaign", "Subscribe to the newsletter"],
        structure_guide=[
            "Problem and background",
            "Field stories and numbers",
            "What we are doing now",
            "How to take part (CTA)",
        ],
    ),
    CHANNEL_BLOG_MANUAL: ChannelTemplate(
        objective="Tell a relatable story for local readers and turn it into participation.",
        cta_examples=["Leave a comment to join the campaign", "Ask us about giving", "Share to show support"],
        structure_guide=[
            "Intro: the issue in one line",
            "Body: explained through a real case",
            "Wrap-up: this week's key results",
            "Close: ask readers to take part",
        ],
    ),
    CHANNEL_IMAGE_FEED: ChannelTemplate(
        objective="Drive reactions (likes, saves, shares) with a short, strong message.",
        cta_examples=["Save this and act with us", "Leave a comment of support", "Join via the link in our profile"],
        structure_guide=[
            "One-line hook",
            "Two or three lines of core message",
            "One line of evidence (number or case)",
            "Call to action",
        ],
    ),
    CHANNEL_MICRO_POST: ChannelTemplate(
        objective="Start a conversation and encourage people to pass it on.",
        cta_examples=["Tell us what you think", "Please share this post", "What can you do today?"],
        structure_guide=[
            "Open with a question or a point of view",
            "Summarise the evidence or a case",
            "Suggest an action",
            "Close with a discussion question",
        ],
    ),
}

_guidelines_cache: Dict[str, str] = {}


def build_default_guidelines() -> str:
    tone_lines = "\n".join(f"- {org_type}: {tone}" for org_type, tone in ORGANIZATION_TONE.items())
    channel_sections = []
    for channel, template in CHANNEL_TEMPLATES.items():
        channel_sections.append("\n".join([
            f"### {channel}",
            f"- Objective: {template.objective}",
            f"- Structure: {' -> '.join(template.structure_guide)}",
            f"- CTA: {' / '.join(template.cta_examples)}",
        ]))
    return "\n".join([
        "# Channel Guidelines",
        "",
        "## Organization Tones",
        tone_lines,
        "",
        "## Channel Structures",
        "\n\n".join(channel_sections),
    ])


def load_channel_guidelines(path: Optional[Path] = None) -> str:
    """Guidelines markdown from ``path`` if it exists and is non-empty, else the built-in text."""
    cache_key = str(path) if path else ""
    if cache_key in _guidelines_cache:
        return _guidelines_cache[cache_key]

    text = ""
    if path is not None:
        if path.exists():
            text = path.read_text(encoding="utf-8").strip()
        else:
            logger.warning(f"[GENERATE] Guidelines file {path} not found; using built-in guidelines")
    if not text:
        text = build_default_guidelines()

    _guidelines_cache[cache_key] = text
    return text


def organization_tone(organization_type: str, organization_name: str, mission: str) -> str:
    base = ORGANIZATION_TONE.get(organization_type, ORGANIZATION_TONE["other"])
    return f"{base} / sincere voice aligned with {organization_name}'s mission ({mission})"


def build_template_prompt(channel: str, organization_type: str, organization_name: str, mission: str) -> str:
    """Channel + tone brief appended to the default system prompt."""
    template = CHANNEL_TEMPLATES.get(channel, CHANNEL_TEMPLATES[CHANNEL_BLOG_AUTO])
    return "\n".join([
        f"Template: {organization_type}:{channel}",
        f"Tone: {organization_tone(organization_type, organization_name, mission)}",
        f"Objective: {template.objective}",
        f"Structure: {' -> '.join(template.structure_guide)}",
        f"CTA examples: {' / '.join(template.cta_examples)}",
    ])
