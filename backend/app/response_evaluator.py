"""
Scores an alternative agent response against the violation it replaces.
"""
import json
import logging
from typing import Any

from openai import AsyncOpenAI

from .compliance_analyzer import ComplianceAnalysisError
from .config import Settings, is_llm_configured
from .models import EvaluateRequest, EvaluationResult

logger = logging.getLogger('callguard.analysis')

RECOMMENDATIONS = ("approve", "approve_with_notes", "needs_revision")
SCORE_FIELDS = ("fdcpaCompliance", "professionalism", "effectiveness", "toneEmpathy", "overall")


class EvaluationFormatError(ValueError):
    """The model's evaluation did not match the expected structure."""


EVALUATION_PROMPT_TEMPLATE = """Evaluate this alternative collection agent response for quality and compliance.

Context:
- Original Response: "{original}"
- Violation Type: {violation_type}
- FDCPA Issue: {explanation}
- Regulation: {regulation}

Alternative Response:
"{alternative}"

Evaluate the alternative response on these dimensions (0-10 scale):

1. FDCPA Compliance
   - Does it avoid all regulatory violations?
   - Is it free of harassment, threats, or false representations?

2. Professionalism
   - Is the tone respectful and appropriate?
   - Does it maintain professional standards?

3. Effectiveness
   - Does it advance the collection goal appropriately?
   - Does it maintain communication without being aggressive?

4. Tone & Empathy
   - Does it show understanding of the consumer's situation?
   - Is the language constructive rather than confrontational?

Return evaluation in this JSON structure, and nothing else:
{{
  "scores": {{
    "fdcpaCompliance": number (0-10),
    "professionalism": number (0-10),
    "effectiveness": number (0-10),
    "toneEmpathy": number (0-10),
    "overall": number (0-10)
  }},
  "improvements": [
    "List specific improvements over original"
  ],
  "concerns": [
    "List any remaining issues or areas for improvement"
  ],
  "rationale": "Detailed explanation of the evaluation",
  "recommendation": "approve" | "approve_with_notes" | "needs_revision"
}}"""


def build_evaluation_prompt(request: EvaluateRequest) -> str:
    context = request.violation_context
    return EVALUATION_PROMPT_TEMPLATE.format(
        original=request.original_response,
        violation_type=context.type,
        explanation=context.explanation,
        regulation=context.regulation,
        alternative=request.alternative_response,
    )


def validate_evaluation_structure(parsed: Any) -> bool:
    if not isinstance(parsed, dict) or not isinstance(parsed.get("scores"), dict):
        return False
    scores = parsed["scores"]
    return (
        all(
            isinstance(scores.get(name), (int, float)) and not isinstance(scores.get(name), bool)
            for name in SCORE_FIELDS
        )
        and isinstance(parsed.get("improvements"), list)
        and isinstance(parsed.get("concerns"), list)
        and isinstance(parsed.get("rationale"), str)
        and parsed.get("recommendation") in RECOMMENDATIONS
    )


def parse_evaluation(text: str) -> EvaluationResult:
    """Parse a model evaluation. No repair pass: malformed output is an error."""
    parsed = json.loads(text)
    if not validate_evaluation_structure(parsed):
        logger.error(f"Invalid evaluation structure: {str(parsed)[:500]}")
        raise EvaluationFormatError("Invalid JSON structure from AI response")
    return EvaluationResult.model_validate(parsed)


class ResponseEvaluator:
    """Single-shot LLM evaluation with a low temperature for consistent scoring."""

    def __init__(self, client: AsyncOpenAI, model: str = "gpt-4o-mini", max_tokens: int = 2000, temperature: float = 0.3):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    @classmethod
    def from_settings(cls, config: Settings) -> "ResponseEvaluator":
        if not is_llm_configured(config):
            raise ComplianceAnalysisError("OPENAI_API_KEY is not set in environment variables")
        client = AsyncOpenAI(api_key=config.openai_api_key, base_url=config.openai_base_url or None)
        return cls(client, model=config.openai_model, temperature=config.evaluation_temperature)

    async def close(self) -> None:
        await self.client.close()

    async def evaluate(self, request: EvaluateRequest) -> EvaluationResult:
        prompt = build_evaluation_prompt(request)
        logger.info(
            f"Evaluating alternative response: original {len(request.original_response)} chars, "
            f"alternative {len(request.alternative_response)} chars"
        )

        response = await self.client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        if not response.choices or not response.choices[0].message.content:
            raise EvaluationFormatError("Unexpected response type from AI")

        result = parse_evaluation(response.choices[0].message.content)
        logger.info(f"Evaluation complete - overall: {result.scores.overall}, recommendation: {result.recommendation}")
        return result
