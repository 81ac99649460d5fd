"""Generation module - client for the remote comment generation API."""

from .base import GenerationClient, GenerationResult
from .http_client import HttpGenerationClient
from .retry import generate_with_retry
from .prompts import PERSONALITIES, Personality, build_generation_prompt, build_improvement_prompt

__all__ = [
    'GenerationClient', 'GenerationResult', 'HttpGenerationClient', 'generate_with_retry',
    'PERSONALITIES', 'Personality', 'build_generation_prompt', 'build_improvement_prompt',
]
