"""
Model client abstraction for LLM providers (Groq/OpenAI-compatible, Anthropic).

Handles API calls, timeouts, and JSON response parsing. Callers own the
fallback policy: every client raises on failure.
"""

import json
import logging
import time
from typing import Any, Dict, Optional
from abc import ABC, abstractmethod

log = logging.getLogger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_MODEL = "llama-3.3-70b-versatile"
ANTHROPIC_DEFAULT_MODEL = "claude-3-5-sonnet-latest"


SYSTEM_PROMPT = """You are a crypto perpetual-futures signal generator with MANDATORY numerical constraints.

ABSOLUTE RULES (violation = system rejection):
1. REFERENCE POINT: The current price is the ONLY anchor. NEVER use historical swing highs/lows as entry.
2. PERCENTAGE BOUNDS: Entry MUST be within 0.5% of the current price.
3. Stop loss and take profit must bracket the entry (long: stop < entry < target, short: mirrored).
4. Confidence is 0-100. Use "none" when there is no edge.
5. execution_strategy is "market" for immediate entry or "limit" to wait for a better price.

Response format (valid JSON only):
{
  "direction": "long|short|none",
  "entry_price": 0.0,
  "stop_loss": 0.0,
  "take_profit": 0.0,
  "confidence": 0,
  "pattern_explanation": "chart pattern observed",
  "multi_timeframe_reasoning": "how the timeframes agree or disagree",
  "execution_strategy": "market|limit",
  "strategy_reason": "why market or limit"
}
"""


class ModelClient(ABC):
    """
    Base class for model clients.

    Subclasses implement `_complete` (prompt in, raw text out); `call`
    formats the snapshot, times the round trip and parses the JSON.
    """

    provider = "model"

    def call(self, request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """
        Call the model with a market snapshot request.

        Args:
            request: Snapshot dict (see ai.snapshot_builder)
            timeout: Max time in seconds

        Returns:
            Parsed JSON response dict

        Raises:
            Exception: On API or parsing errors
        """
        start = time.perf_counter()
        try:
            text = self._complete(format_request(request), timeout)
            if not text:
                raise ValueError(f"Empty response from {self.provider}")
            parsed = parse_json_content(text)
        except Exception as e:
            log.error(f"{self.provider} call failed after {(time.perf_counter() - start) * 1000:.1f}ms: {e}")
            raise
        log.info(f"{self.provider} call completed in {(time.perf_counter() - start) * 1000:.1f}ms")
        return parsed

    @abstractmethod
    def _complete(self, prompt: str, timeout: float) -> str:
        pass


class OpenAIClient(ModelClient):
    """OpenAI-compatible chat client (defaults to Groq's endpoint)."""

    provider = "openai"

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL, base_url: Optional[str] = None):
        self.model = model
        self.base_url = base_url or GROQ_BASE_URL

        # SDK is optional; only needed when this provider is configured
        try:
            from openai import OpenAI
            self.client = OpenAI(api_key=api_key, base_url=self.base_url, timeout=30.0)
        except ImportError:
            log.warning("openai SDK missing; install the 'ai' extra to use this provider")
            self.client = None

    def _complete(self, prompt: str, timeout: float) -> str:
        if self.client is None:
            raise RuntimeError("openai SDK not available")
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0.1,
            max_tokens=1500,
            timeout=timeout,
        )
        return response.choices[0].message.content


class AnthropicClient(ModelClient):
    """Claude via the Messages API. JSON may come back fenced."""

    provider = "anthropic"

    def __init__(self, api_key: str, model: str = ANTHROPIC_DEFAULT_MODEL):
        self.model = model
        try:
            from anthropic import Anthropic
            self.client = Anthropic(api_key=api_key, timeout=30.0)
        except ImportError:
            log.warning("anthropic SDK missing; install the 'ai' extra to use this provider")
            self.client = None

    def _complete(self, prompt: str, timeout: float) -> str:
        if self.client is None:
            raise RuntimeError("anthropic SDK not available")
        response = self.client.messages.create(
            model=self.model,
            max_tokens=1500,
            temperature=0.1,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
        )
        return response.content[0].text


class MockClient(ModelClient):
    """Canned responses for tests; declines to trade unless given a response."""

    provider = "mock"

    def __init__(self, canned: Optional[Dict[str, Any]] = None):
        self.canned = canned
        self.requests = []

    def call(self, request: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        self.requests.append(request)
        return self._response(request)

    def _complete(self, prompt: str, timeout: float) -> str:
        return json.dumps(self._response({}))

    def _response(self, request: Dict[str, Any]) -> Dict[str, Any]:
        if self.canned:
            return self.canned
        return {
            "direction": "none",
            "entry_price": request.get("current_price") or 0.0,
            "stop_loss": 0.0,
            "take_profit": 0.0,
            "confidence": 0,
            "pattern_explanation": "Mock client",
            "multi_timeframe_reasoning": "",
            "execution_strategy": "market",
            "strategy_reason": "",
        }


def parse_json_content(content: str) -> Dict[str, Any]:
    """Parse model text, unwrapping a markdown code fence if present."""
    text = content.strip()
    if "```" in text:
        text = text.split("```")[1]
        if text.lower().startswith("json"):
            text = text[4:]
    return json.loads(text)


def format_request(request: Dict[str, Any]) -> str:
    """Format a market snapshot as a structured prompt."""
    current = request.get("current_price")
    parts = [
        "=== Market Context ===",
        f"Symbol: {request.get('symbol', 'UNKNOWN')}",
        f"Trading mode: {request.get('trading_mode', 'unknown')} "
        f"(primary timeframe {request.get('primary_timeframe', '?')})",
    ]
    if current:
        parts.append(f"Current price: ${current:.2f}")
        parts.append(f"Allowed entry range: ${current * 0.995:.2f} - ${current * 1.005:.2f}")
    if request.get("volatility_pct") is not None:
        parts.append(f"Volatility (std of returns): {request['volatility_pct']:.3f}%")

    for tf, candles in (request.get("timeframes") or {}).items():
        parts.append("")
        parts.append(f"=== {tf} candles (last {min(len(candles), 20)} of {len(candles)}) ===")
        for c in candles[-20:]:
            parts.append(
                f"t={c['time']} O={c['open']:.2f} H={c['high']:.2f} "
                f"L={c['low']:.2f} C={c['close']:.2f} V={c.get('volume', 0):.0f}"
            )

    book = request.get("orderbook") or {}
    if book.get("buy") or book.get("sell"):
        parts.append("")
        parts.append("=== Orderbook (top levels) ===")
        for level in book.get("buy", [])[:5]:
            parts.append(f"BID {level.get('price')} x {level.get('size')}")
        for level in book.get("sell", [])[:5]:
            parts.append(f"ASK {level.get('price')} x {level.get('size')}")

    parts.append("")
    parts.append("Provide your recommendation in JSON format.")
    return "\n".join(parts)


def create_model_client(
    provider: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs
) -> ModelClient:
    """
    Factory function to create appropriate model client.

    Args:
        provider: "openai" (Groq/OpenAI-compatible), "anthropic", or "mock"
        api_key: API key for the provider
        model: Model name (provider-specific)
        **kwargs: Additional provider-specific args

    Raises:
        ValueError: If provider is unknown or the key is missing
    """
    provider = provider.lower()

    if provider in ("openai", "groq"):
        if not api_key:
            raise ValueError("OpenAI-compatible provider requires api_key")
        return OpenAIClient(api_key=api_key, model=model or DEFAULT_MODEL, base_url=kwargs.get("base_url"))

    elif provider == "anthropic":
        if not api_key:
            raise ValueError("Anthropic requires api_key")
        return AnthropicClient(api_key=api_key, model=model or ANTHROPIC_DEFAULT_MODEL)

    elif provider == "mock":
        return MockClient(canned=kwargs.get("canned"))

    else:
        raise ValueError(f"Unknown provider: {provider}. Use 'openai', 'anthropic', or 'mock'")
