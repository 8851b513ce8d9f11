"""
Photo-quality evaluation for training datasets via a multimodal LiteLLM model.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
from typing import Any, Mapping, Sequence

from kidbookai.common import CompletionCallable, call_chat_completion, parse_json_content

from .contracts import PhotoEvaluation, clamp_percent, guess_content_type

logger = logging.getLogger(__name__)

MIN_ACCEPTABLE_SCORE = 45

EVALUATION_GUIDE = """
You are a senior dataset curator preparing photos for fine-tuning personalised children's-story illustrations.

Use these rules when judging each image:
- Face must be clearly visible; no sunglasses, hats, major obstructions.
- Torso-up, front-facing framing preferred (head and shoulders, relaxed posture).
- Only the child should be present. If another person appears (even partially), the image MUST be rejected.
- Avoid blurred, cropped, dark, obstructed, group, or heavily stylised images.

Return STRICT JSON using this schema:
{
  "images": [
    {
      "name": "filename",
      "overallScorePercent": integer 0-100,
      "acceptable": boolean,
      "verdict": "accept" | "needs_more" | "reject",
      "confidencePercent": integer 0-100,
      "criteria": {
        "clarity": { "scorePercent": integer 0-100, "verdict": "yes" | "no", "notes": "concise note" },
        "framing": { "scorePercent": integer 0-100, "verdict": "yes" | "no", "notes": "..." },
        "expression": { "scorePercent": integer 0-100, "verdict": "yes" | "no", "notes": "..." },
        "lighting": { "scorePercent": integer 0-100, "verdict": "yes" | "no", "notes": "..." },
        "safety": { "scorePercent": integer 0-100, "verdict": "yes" | "no", "notes": "..." }
      },
      "summary": "short paragraph"
    }
  ]
}

Treat an image as acceptable only if its overall score is at least 45 AND the face is clearly visible AND there is only one child present.
"""

_MULTIPLE_PEOPLE_HINTS = ("multiple face", "two people", "another person")


def _percent_score(value: Any, fallback: int = 0) -> int:
    return int(round(clamp_percent(value, default=fallback)))


def normalize_evaluation(payload: Mapping[str, Any]) -> PhotoEvaluation:
    """
    Reduce the evaluator's JSON to a verdict, re-applying the acceptance rules locally
    rather than trusting the model's own ``acceptable`` flag.
    """
    images = payload.get("images")
    if not isinstance(images, Sequence) or not images or not isinstance(images[0], Mapping):
        return PhotoEvaluation(acceptable=False, verdict="needs_more", summary="No image was evaluated.")

    image = images[0]
    score = _percent_score(image.get("overallScorePercent"))
    acceptable = score >= MIN_ACCEPTABLE_SCORE

    criteria = image.get("criteria") if isinstance(image.get("criteria"), Mapping) else {}
    for key in ("clarity", "safety"):
        detail = criteria.get(key) if isinstance(criteria.get(key), Mapping) else {}
        if detail.get("verdict") != "yes":
            acceptable = False
    for detail in criteria.values():
        notes = str(detail.get("notes") or "").lower() if isinstance(detail, Mapping) else ""
        if any(hint in notes for hint in _MULTIPLE_PEOPLE_HINTS):
            acceptable = False

    confidence = _percent_score(image.get("confidencePercent"), 70 if acceptable else 50)
    return PhotoEvaluation(
        acceptable=acceptable,
        verdict="accept" if acceptable else "reject",
        confidence=confidence,
        score=score,
        summary=str(image.get("summary") or "").strip(),
    )


class LiteLLMPhotoEvaluator:
    """
    Ask a multimodal chat model whether a photo is fit for LoRA training.
    """

    def __init__(
        self,
        *,
        model: str | None = None,
        api_key: str | None = None,
        completion_fn: CompletionCallable | None = None,
        temperature: float = 0.0,
        max_tokens: int = 900,
    ) -> None:
        openrouter_model = os.getenv("OPENROUTER_MODEL")
        self._model = (
            model
            or os.getenv("KIDBOOKAI_EVALUATOR_MODEL")
            or (f"openrouter/{openrouter_model}" if openrouter_model else None)
            or "openrouter/openai/gpt-4.1-mini"
        )
        self._api_key = api_key or os.getenv("KIDBOOKAI_EVALUATOR_API_KEY") or os.getenv("OPENROUTER_API_KEY")
        self._completion_fn: CompletionCallable = completion_fn or call_chat_completion
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def model(self) -> str:
        """Return the model identifier in use."""
        return self._model

    async def evaluate(
        self,
        photo_bytes: bytes,
        file_name: str,
        content_type: str | None = None,
    ) -> PhotoEvaluation:
        if not photo_bytes:
            raise ValueError("Evaluation requires non-empty image bytes.")

        mime_type = content_type or guess_content_type(file_name)
        encoded = base64.b64encode(photo_bytes).decode("ascii")
        label = file_name or "Uploaded Image"
        messages = [
            {"role": "system", "content": EVALUATION_GUIDE},
            {
                "role": "user",
                "content": [
                    {
                        "type": "text",
                        "text": (
                            f"File name: {label}. Evaluate this single image for fine-tuning readiness "
                            "and respond with the mandated JSON schema."
                        ),
                    },
                    {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                ],
            },
        ]

        result = await asyncio.to_thread(
            self._completion_fn,
            model=self._model,
            messages=messages,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            api_key=self._api_key,
            response_format={"type": "json_object"},
        )
        evaluation = normalize_evaluation(parse_json_content(result.text))
        logger.debug("Evaluated %s: %s (score %s)", label, evaluation.verdict, evaluation.score)
        return evaluation
