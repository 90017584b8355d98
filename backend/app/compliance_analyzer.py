"""
FDCPA compliance analysis of call transcripts via an LLM.

The model is asked for a fixed JSON shape. Responses that are not quite
JSON (markdown fences, trailing commas, chatter around the object) are
repaired once before the attempt is counted as failed.
"""
import asyncio
import json
import logging
import re
from typing import Any, Dict, Iterable, Optional, Union

from openai import AsyncOpenAI

from .config import Settings, is_llm_configured
from .logging_config import PerformanceMonitor
from .models import AnalysisResult, TranscriptTurn

logger = logging.getLogger('callguard.analysis')

BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 5000


class AnalysisFormatError(ValueError):
    """The model answered, but not with a usable analysis object."""


class ComplianceAnalysisError(Exception):
    """All analysis attempts failed."""


ANALYSIS_PROMPT_TEMPLATE = """Analyze this debt collection call for FDCPA compliance.

Call Transcript:
{transcript}

Evaluate the conversation for:

1. FDCPA Violations
   - Section 806 (Harassment or Abuse)
   - Section 807 (False or Misleading Representations)
   - Section 808 (Unfair Practices)

2. Risk Assessment
   - Overall risk score (0-10, where 10 is highest risk)
   - FDCPA compliance score (0-10, where 10 is fully compliant)

3. Language Analysis
   - Abusive or threatening language
   - Excessive pressure tactics
   - Unprofessional communication

Return analysis in the following JSON structure, and nothing else:
{{
  "riskScore": number,
  "fdcpaScore": number,
  "violations": [
    {{
      "type": "abusive_language" | "threatening" | "excessive_pressure" | "fdcpa_violation",
      "severity": "low" | "medium" | "high" | "critical",
      "timestamp": number (seconds from start),
      "speaker": "agent" | "customer",
      "quote": "exact quote from transcript",
      "explanation": "why this is problematic",
      "regulation": "FDCPA Section reference",
      "suggestedAlternative": "better way to phrase this"
    }}
  ],
  "summary": "brief overall assessment",
  "recommendations": ["list of general recommendations"]
}}"""


def _turn_line(turn: Union[TranscriptTurn, Dict[str, Any]]) -> str:
    if isinstance(turn, TranscriptTurn):
        return f"{turn.speaker}: {turn.text}"
    return f"{turn.get('speaker', '')}: {turn.get('text', '')}"


def build_analysis_prompt(transcript: Iterable[Union[TranscriptTurn, Dict[str, Any]]]) -> str:
    """Render the analysis prompt. Same transcript, same prompt."""
    transcript_text = "\n".join(_turn_line(turn) for turn in transcript)
    return ANALYSIS_PROMPT_TEMPLATE.format(transcript=transcript_text)


def repair_json(text: str) -> str:
    """Fix the usual formatting slips in model-produced JSON."""
    repaired = text.strip()

    repaired = re.sub(r'```json\s*', '', repaired)
    repaired = re.sub(r'```\s*', '', repaired)

    first_brace = repaired.find('{')
    last_brace = repaired.rfind('}')
    if first_brace != -1 and last_brace != -1:
        repaired = repaired[first_brace:last_brace + 1]

    repaired = re.sub(r',(\s*[}\]])', r'\1', repaired)

    # Missing commas between adjacent strings or objects on separate lines
    repaired = re.sub(r'"\s*\n\s*"', '",\n"', repaired)
    repaired = re.sub(r'}\s*\n\s*{', '},\n{', repaired)

    return repaired


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_analysis_structure(parsed: Any) -> bool:
    return (
        isinstance(parsed, dict)
        and _is_number(parsed.get('riskScore'))
        and _is_number(parsed.get('fdcpaScore'))
        and isinstance(parsed.get('violations'), list)
        and isinstance(parsed.get('summary'), str)
        and isinstance(parsed.get('recommendations'), list)
    )


def _parse_analysis(text: str) -> AnalysisResult:
    parsed = json.loads(text)
    if not validate_analysis_structure(parsed):
        raise AnalysisFormatError("Invalid JSON structure")
    return AnalysisResult.model_validate(parsed)


def parse_with_repair(text: str) -> AnalysisResult:
    """
    Parse a model response into an AnalysisResult.

    Tries a direct parse, then one pass of repair_json. If both fail the
    error from the direct parse is raised.
    """
    try:
        return _parse_analysis(text)
    except ValueError as first_error:
        logger.warning("Initial JSON parse failed, attempting repair")
        try:
            result = _parse_analysis(repair_json(text))
        except ValueError as repair_error:
            logger.error(f"JSON parse failed even after repair: {repair_error}")
            logger.debug(f"First 500 chars of response: {text[:500]}")
            raise first_error
        logger.info("JSON parsed successfully after repair")
        return result


def backoff_delay_ms(attempt: int) -> int:
    """Delay after failed attempt ``attempt`` (1-based): 1s, 2s, 4s, capped at 5s."""
    return min(BACKOFF_BASE_MS * 2 ** (attempt - 1), BACKOFF_CAP_MS)


class ComplianceAnalyzer:
    """Runs the FDCPA analysis prompt against an OpenAI-compatible chat model."""

    def __init__(self, client: AsyncOpenAI, model: str = "gpt-4o-mini", max_tokens: int = 2048, sleep=asyncio.sleep):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self._sleep = sleep

    @classmethod
    def from_settings(cls, config: Settings) -> "ComplianceAnalyzer":
        if not is_llm_configured(config):
            raise ComplianceAnalysisError("OPENAI_API_KEY is not set in environment variables")
        client = AsyncOpenAI(api_key=config.openai_api_key, base_url=config.openai_base_url or None)
        return cls(client, model=config.openai_model, max_tokens=config.analysis_max_tokens)

    async def close(self) -> None:
        await self.client.close()

    async def _complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        if not response.choices or not response.choices[0].message.content:
            raise AnalysisFormatError("Unexpected response type from AI")
        return response.choices[0].message.content

    async def get_compliance_analysis(self, transcript, max_retries: int = 3) -> AnalysisResult:
        """
        Analyze a transcript for FDCPA compliance.

        Args:
            transcript: Ordered transcript turns (models or dicts)
            max_retries: Total number of attempts

        Raises:
            ComplianceAnalysisError: when every attempt failed
        """
        turns = list(transcript)
        prompt = build_analysis_prompt(turns)
        logger.info(f"Starting compliance analysis: {len(turns)} turns, max attempts {max_retries}")

        last_error: Optional[Exception] = None
        for attempt in range(1, max_retries + 1):
            try:
                with PerformanceMonitor(f"compliance analysis attempt {attempt}"):
                    text = await self._complete(prompt)
                result = parse_with_repair(text)
                logger.info(f"Analysis successful - risk: {result.risk_score}, FDCPA: {result.fdcpa_score}")
                return result
            except Exception as e:
                last_error = e
                logger.error(f"Attempt {attempt}/{max_retries} failed: {e}")
                if attempt < max_retries:
                    delay_ms = backoff_delay_ms(attempt)
                    logger.info(f"Retrying in {delay_ms}ms")
                    await self._sleep(delay_ms / 1000.0)

        raise ComplianceAnalysisError(
            f"Failed to get compliance analysis after {max_retries} attempts: {last_error}"
        )
