import asyncio
import json
import logging
import re
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import requests

from atspect.core import prompts
from atspect.core.config import AISettings, settings
from atspect.core.exceptions import AIError, AIKillSwitchError, AIResponseError
from atspect.core.resilience import retry_with_backoff, with_timeout

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

CATEGORY_WEIGHTS = {
    "formatting": 15,
    "content": 30,
    "keywords": 25,
    "experience": 20,
    "skills": 10,
}

UNAVAILABLE_TIP = "AI analysis temporarily unavailable"


class ResumeMode(str, Enum):
    RECRUITER = "recruiter"
    ATS = "ats"


def build_messages(
    resume_text: str,
    job_title: str,
    job_description: str,
    company_name: str,
    mode: ResumeMode = ResumeMode.RECRUITER,
) -> List[Dict[str, str]]:
    mode_instruction = (
        prompts.ATS_MODE_INSTRUCTION if ResumeMode(mode) == ResumeMode.ATS else prompts.RECRUITER_MODE_INSTRUCTION
    )
    user_content = prompts.get_prompt(
        prompts.RESUME_REVIEW_USER_TEMPLATE,
        mode_instruction=mode_instruction,
        job_title=job_title,
        company_name=company_name,
        job_description=job_description,
        resume_text=resume_text,
        schema=prompts.FEEDBACK_SCHEMA,
        guidelines=prompts.SCORING_GUIDELINES,
    )
    return [
        {"role": "system", "content": prompts.RESUME_REVIEW_SYSTEM},
        {"role": "user", "content": user_content},
    ]


def strip_code_fences(content: str) -> str:
    return _FENCE_RE.sub("", content.strip()).strip()


def parse_feedback(content: Optional[str]) -> Dict[str, Any]:
    """
    Parse completion text into a feedback dict.

    Only `overall_score` and `categories` are required; deeper fields stay
    optional for the consumers.
    """
    if not content or not content.strip():
        raise AIError("No content received from AI service")

    cleaned = strip_code_fences(content)
    try:
        result = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to decode AI JSON response: {cleaned[:200]}")
        raise AIResponseError(f"Failed to parse AI response: {e}", retryable=True) from e

    if not isinstance(result, dict) or "overall_score" not in result or "categories" not in result:
        raise AIResponseError()
    return result


def build_placeholder_feedback() -> Dict[str, Any]:
    """All-zero feedback used when the analysis cannot be completed."""
    explanation = "The analysis service is currently unavailable. Please try refreshing the page later."
    return {
        "overall_score": 0,
        "ats_score": 0,
        "categories": {
            name: {
                "score": 0,
                "weight": weight,
                "tips": [{"tip": UNAVAILABLE_TIP, "explanation": explanation, "priority": "high"}],
            }
            for name, weight in CATEGORY_WEIGHTS.items()
        },
        "suggestions": [
            {
                "category": "system",
                "tip": UNAVAILABLE_TIP,
                "explanation": (
                    "Your resume has been uploaded successfully. The AI analysis service is currently "
                    "unavailable, but you can try refreshing the page later to get your analysis."
                ),
                "priority": "high",
            }
        ],
        "is_placeholder": True,
    }


class ResumeAnalysisClient:
    """Client for a Perplexity-compatible chat completions endpoint."""

    def __init__(
        self,
        config: AISettings = settings.ai,
        http: Optional[requests.Session] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.http = http or requests.Session()
        self._sleep = sleep

    @property
    def time_budget(self) -> float:
        """Longest `analyze` can run: every attempt timing out plus the gaps between them."""
        attempts = self.config.max_attempts
        return attempts * self.config.timeout + (attempts - 1) * self.config.retry_delay

    def _do_call(self, messages: List[Dict[str, str]]) -> str:
        logger.info(f"Calling AI Model: {self.config.model_name}")
        try:
            response = self.http.post(
                self.config.api_url,
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.config.model_name,
                    "messages": messages,
                    "max_tokens": self.config.max_tokens,
                    "temperature": self.config.temperature,
                    "stream": False,
                },
                timeout=self.config.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            logger.error("AI service timeout.")
            raise AIError("AI service reached timeout limit.") from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            logger.error(f"AI service HTTP error: {status}")
            error = AIError(f"AI service returned error: {status}", details={"status_code": status})
            # Client errors (bad key, bad request) will not fix themselves.
            if status is not None and 400 <= status < 500 and status != 429:
                error.retryable = False
            raise error from e
        except requests.exceptions.RequestException as e:
            raise AIError(f"AI service error: {e}") from e

        try:
            return response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AIError("No content received from AI service") from e

    async def analyze(
        self,
        resume_text: str,
        job_title: str,
        job_description: str,
        company_name: str,
        mode: ResumeMode = ResumeMode.RECRUITER,
    ) -> Dict[str, Any]:
        if self.config.kill_switch:
            logger.warning("AI Kill-switch is active. Blocking request.")
            raise AIKillSwitchError()
        if not self.config.api_key:
            logger.error("AI API key missing.")
            raise AIError("AI service configuration error.")

        messages = build_messages(resume_text, job_title, job_description, company_name, mode)
        max_attempts = self.config.max_attempts

        async def _attempt(attempt: int) -> Dict[str, Any]:
            logger.info(f"AI analysis attempt {attempt}/{max_attempts} (mode={ResumeMode(mode).value})")
            content = await with_timeout(
                asyncio.to_thread(self._do_call, messages),
                self.config.timeout,
                f"AI analysis timed out after {self.config.timeout:g}s",
            )
            return parse_feedback(content)

        result = await retry_with_backoff(
            _attempt,
            max_attempts=max_attempts,
            base_delay=self.config.retry_delay,
            factor=1.0,
            jitter=0.0,
            max_delay=self.config.retry_delay,
            sleep=self._sleep,
        )
        logger.info(f"AI analysis succeeded (overall_score={result.get('overall_score')})")
        return result
