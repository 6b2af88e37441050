"""Comment suggestions for judges, written by Gemini.

The assistant is optional. Whatever goes wrong (no key, network failure,
empty reply) the judge gets a fixed fallback sentence instead of an error.
"""

import logging
import os

import google.generativeai as genai

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-1.5-flash"

FALLBACK_NO_KEY = "Comment suggestions are unavailable: no API key is configured."
FALLBACK_EMPTY = "No suggestion available right now."
FALLBACK_ERROR = "Could not reach the comment assistant."

PROMPT_TEMPLATE = """
You are a professional judge at a talent show.
Write a short (1-2 sentences), constructive comment for the performance "{name}".
The score you gave is {score:g}/{max_score:g}.

- High score (above 80%): praise creativity, technique and expression.
- Middle score (50-79%): acknowledge the effort and gently point out what to improve.
- Low score (below 50%): be frank but polite about the preparation.

Return only the comment, with no introduction.
"""


def build_prompt(score: float, performance_name: str, max_score: float = 10) -> str:
    return PROMPT_TEMPLATE.format(name=performance_name, score=score, max_score=max_score)


class CommentSuggester:
    def __init__(self, api_key: str | None = None, model_name: str | None = None):
        self.api_key = api_key if api_key is not None else os.getenv('GEMINI_API_KEY')
        self.model_name = model_name or os.getenv('GEMINI_MODEL', DEFAULT_MODEL)
        self._model = None
        if self.api_key:
            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(self.model_name)
            logger.info("Comment suggestions enabled (%s)", self.model_name)
        else:
            logger.warning("GEMINI_API_KEY not set, comment suggestions unavailable")

    @property
    def available(self) -> bool:
        return self._model is not None

    def suggest(self, score: float, performance_name: str, max_score: float = 10) -> str:
        if self._model is None:
            return FALLBACK_NO_KEY
        try:
            response = self._model.generate_content(build_prompt(score, performance_name, max_score))
            text = (response.text or '').strip()
        except Exception as e:
            logger.warning(f"Comment suggestion failed: {e}")
            return FALLBACK_ERROR
        return text or FALLBACK_EMPTY
