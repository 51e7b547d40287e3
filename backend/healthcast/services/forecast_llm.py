# healthcast/services/forecast_llm.py
"""Forecasting through an OpenAI-compatible chat model."""
from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

import pandas as pd
import structlog
from openai import OpenAI, OpenAIError

from healthcast.config import Settings
from healthcast.errors import ForecastEngineError
from healthcast.schemas.forecast import Granularity
from healthcast.services.forecast import ForecastEngine, RawForecast
from healthcast.services.forecast_metrics import sanitize_metrics

logger = structlog.get_logger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)

SYSTEM_PROMPT = (
    "You are an expert data scientist specializing in seasonal time series forecasting "
    "for public health service demand. Reply with JSON only."
)


def build_prompt(y: pd.Series, periods_ahead: int, granularity: Granularity) -> str:
    unit = "days" if granularity == "daily" else "months"
    fmt = "%Y-%m-%d" if granularity == "daily" else "%Y-%m"
    rows = "\n".join(f"{ts.strftime(fmt)}: {int(v)}" for ts, v in y.items())
    total = float(y.sum())
    avg = total / len(y) if len(y) else 0.0
    return f"""
# Task
Generate {periods_ahead} {unit} of service demand predictions following the history below.

# Historical Data (past {len(y)} {unit})
{rows}

# Statistics
- Total: {int(total)}
- Average per period: {avg:.2f}
- Data points: {len(y)}

# Instructions
1. Analyze seasonality, overall trend and volatility.
2. Generate EXACTLY {periods_ahead} predictions starting with the period after the last one above.
   Predictions must be non-negative integers with 95% confidence bounds.
3. Provide accuracy metrics (mse, rmse, mae, r_squared in 0-1) for your model on this history.
4. Identify the overall trend (increasing/decreasing/stable) and whether seasonality is present.

# Output Format
{{
  "predictions": [
    {{"period": "<date>", "predicted_value": <integer>, "lower_bound": <integer>,
      "upper_bound": <integer>, "confidence_level": <0.80-0.95>}}
  ],
  "model_version": "<name>",
  "accuracy_metrics": {{"mse": <number>, "rmse": <number>, "mae": <number>, "r_squared": <0-1>}},
  "trend": "increasing|decreasing|stable",
  "seasonality_detected": true|false
}}

Return ONLY valid JSON, without markdown or explanatory text.
"""


def parse_response(text: Optional[str]) -> Dict[str, Any]:
    """Strip markdown fences and decode the JSON object in ``text``."""
    if not text:
        raise ForecastEngineError("empty response from generative engine")
    cleaned = _FENCE.sub("", text).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start : end + 1]
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ForecastEngineError("generative engine returned unparseable output", {"error": str(exc)}) from exc
    if not isinstance(payload, dict):
        raise ForecastEngineError("generative engine returned a non-object payload")
    return payload


def _value(row: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in row:
            return row[k]
    return None


def _clamp_confidence(v: Any, low: float, high: float) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return high
    if f != f:
        return high
    return min(high, max(low, f))


class GenerativeForecastEngine(ForecastEngine):
    name = "llm"

    def __init__(self, settings: Optional[Settings] = None, client: Any = None):
        super().__init__(settings)
        self._client = client

    @property
    def client(self):
        if self._client is None:
            s = self.settings
            self._client = OpenAI(api_key=s.LLM_API_KEY, base_url=s.LLM_BASE_URL, timeout=s.LLM_TIMEOUT_SECONDS)
        return self._client

    def _complete(self, prompt: str) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.settings.LLM_MODEL,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.settings.LLM_TEMPERATURE,
            )
        except OpenAIError as exc:
            logger.error("forecast.llm_request_failed", error=str(exc))
            raise ForecastEngineError("generative engine request failed", {"error": str(exc)}) from exc
        return response.choices[0].message.content

    def _predict(self, y: pd.Series, periods_ahead: int, granularity: Granularity) -> RawForecast:
        s = self.settings
        payload = parse_response(self._complete(build_prompt(y, periods_ahead, granularity)))

        rows = payload.get("predictions") or []
        if not isinstance(rows, list):
            raise ForecastEngineError("'predictions' must be a list")

        predicted: List[float] = []
        lower: List[Any] = []
        upper: List[Any] = []
        confidence: List[float] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            value = _value(row, "predicted_value", "predicted", "value")
            if value is None:
                continue
            predicted.append(value)
            lower.append(_value(row, "lower_bound", "lower"))
            upper.append(_value(row, "upper_bound", "upper"))
            confidence.append(
                _clamp_confidence(row.get("confidence_level"), s.LLM_MIN_CONFIDENCE, s.LLM_MAX_CONFIDENCE)
            )

        if len(predicted) != periods_ahead:
            logger.warning(
                "forecast.llm_horizon_mismatch",
                requested=periods_ahead,
                returned=len(predicted),
            )

        metrics = payload.get("accuracy_metrics") or {}
        if not isinstance(metrics, dict):
            metrics = {}
        seasonality = payload.get("seasonality_detected")

        return RawForecast(
            predicted=predicted,
            lower=lower,
            upper=upper,
            confidence=confidence,
            accuracy=sanitize_metrics(metrics.get("mse"), metrics.get("mae"), metrics.get("r_squared")),
            # recomputed from the final points rather than trusting the model's label
            trend=None,
            seasonality_detected=seasonality is True,
            model_version=str(payload.get("model_version") or f"llm-{self.settings.LLM_MODEL}"),
        )
