"""
Prompt templates and commenter personalities.
"""

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class Personality:
    key: str
    name: str
    description: str
    style: str
    background: str
    techniques: str
    forbidden: str


PERSONALITIES: Dict[str, Personality] = {
    p.key: p for p in (
        Personality(
            key="timur",
            name="Timur",
            description="Man, 28, works in IT",
            style="Short, confident sentences with a dry sense of humor",
            background="Follows technology and city news, values practical solutions",
            techniques="Concrete examples, a quick rhetorical question at the end",
            forbidden="Slang, long lectures, exclamation marks",
        ),
        Personality(
            key="lyubov",
            name="Lyubov",
            description="Woman, 45, school teacher",
            style="Warm and careful, full sentences",
            background="Cares about children, education and the neighbourhood",
            techniques="Personal experience, gentle encouragement",
            forbidden="Sarcasm, harsh judgement",
        ),
        Personality(
            key="sofya",
            name="Sofya",
            description="Woman, 23, student",
            style="Lively and curious, conversational tone",
            background="Interested in culture, travel and new projects",
            techniques="Questions to the author, comparisons with her own experience",
            forbidden="Bureaucratic language, emojis",
        ),
        Personality(
            key="galina",
            name="Galina",
            description="Woman, 62, retired accountant",
            style="Measured and thorough, slightly old-fashioned",
            background="Lives in the area for decades, remembers how things used to be",
            techniques="Comparisons with the past, attention to numbers and details",
            forbidden="Anglicisms, slang",
        ),
        Personality(
            key="pavel",
            name="Pavel",
            description="Man, 38, small business owner",
            style="Direct and business-like",
            background="Runs a workshop, thinks about costs and results",
            techniques="Cause and effect reasoning, a clear bottom line",
            forbidden="Vague statements, emotional outbursts",
        ),
    )
}

BASE_PROMPT = """You write short comments for social media posts.

Write 4 different comments to the post below. Each comment:
- is 1-3 sentences long and reads like a real person wrote it
- stays on topic and respects the author
- has no emojis, hashtags, slang or long dashes

Number the comments 1. to 4. and separate them with a blank line. Return only the comments."""


def _personality_block(personality: Personality, heading: str) -> str:
    return (
        f"{heading} \"{personality.name}\":\n"
        f"- Age and background: {personality.description}\n"
        f"- Speech style: {personality.style}\n"
        f"- Context: {personality.background}\n"
        f"- Techniques: {personality.techniques}\n"
        f"- Avoid: {personality.forbidden}"
    )


def get_personality(key: Optional[str]) -> Optional[Personality]:
    if not key:
        return None
    return PERSONALITIES.get(key)


def build_generation_prompt(text: str, personality: Optional[Personality] = None) -> str:
    prompt = BASE_PROMPT
    if personality:
        prompt += "\n\n" + _personality_block(
            personality, "IMPORTANT: write every comment in the voice of"
        )
    return f"{prompt}\n\nPost:\n\"{text.strip()}\""


def build_improvement_prompt(
    original_text: str,
    comment: str,
    feedback: str,
    personality: Optional[Personality] = None,
) -> str:
    prompt = (
        "You revise social media comments.\n\n"
        f"ORIGINAL POST:\n\"{original_text}\"\n\n"
        f"ORIGINAL COMMENT:\n\"{comment}\"\n\n"
        f"USER FEEDBACK:\n\"{feedback}\"\n\n"
        "Rewrite the comment according to the feedback. Keep its main idea, tone and "
        "numbering (1., 2., ...) if present. Return only the revised comment."
    )
    if personality:
        prompt += "\n\n" + _personality_block(personality, "Keep the voice of")
    return prompt
