"""Oracle contract for the judgment calls the resolver cannot make on its own.

The pipeline and provenance search only see :class:`Oracle`. Every method
either returns an answer of the declared shape or raises
:class:`~reqgraph.errors.OracleError`; callers own the fallback policy.
:class:`LLMOracle` implements the contract on top of :class:`~reqgraph.llm.LocalLLM`.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import OracleError
from .models import EndpointSummary

logger = logging.getLogger(__name__)

NONE_ANSWER = "NONE"


class Oracle:
    """Base class for oracle implementations."""

    def identify_target(self, goal: str, endpoints: Sequence[EndpointSummary]) -> str:
        """URL of the endpoint most likely responsible for ``goal``, or ``"NONE"``."""
        raise NotImplementedError

    def identify_dynamic_parts(self, curl: str) -> List[str]:
        """Literal values in ``curl`` that are session or identity specific."""
        raise NotImplementedError

    def identify_bound_inputs(self, curl: str, inputs: Mapping[str, str]) -> Dict[str, str]:
        """Subset of ``inputs`` (name -> value as it appears in ``curl``) present in the request."""
        raise NotImplementedError

    def pick_simplest(self, curls: Sequence[str]) -> int:
        """0-based index of the candidate with the fewest dependencies."""
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Schemas and prompts
# ---------------------------------------------------------------------------

_TARGET_SCHEMA = {
    "type": "object",
    "properties": {
        "url": {"type": "string", "description": "The URL responsible for the action"},
    },
    "required": ["url"],
}

_DYNAMIC_PARTS_SCHEMA = {
    "type": "object",
    "properties": {
        "dynamic_parts": {
            "type": "array",
            "items": {"type": "string"},
            "description": (
                "Values (not keys) in the cURL command that are unique to a user or "
                "session and make the request fail when wrong. No duplicates."
            ),
        },
    },
    "required": ["dynamic_parts"],
}

_INPUTS_SCHEMA = {
    "type": "object",
    "properties": {
        "identified_variables": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "variable_name": {"type": "string", "description": "The name of the input variable"},
                    "variable_value": {
                        "type": "string",
                        "description": "The exact form of the value as it appears in the cURL command",
                    },
                },
                "required": ["variable_name", "variable_value"],
            },
        },
    },
    "required": ["identified_variables"],
}

_SIMPLEST_SCHEMA = {
    "type": "object",
    "properties": {
        "index": {"type": "integer", "description": "0-based index of the simplest cURL command"},
    },
    "required": ["index"],
}

_TARGET_PROMPT = """API endpoints captured from a web application:

{endpoints}

Task: Which endpoint is MOST LIKELY responsible for this action: "{goal}"

Pick the BEST matching URL. Only answer url="NONE" if none of the endpoints could be related.
Return the full URL exactly as shown above (including any #op= suffix).
"""

_DYNAMIC_PARTS_PROMPT = """URL: {curl}

Task:
Identify which parts of the cURL command are dynamic, specific to a user or session,
and checked by the server for validity: tokens, IDs, session variables, or any other
value that makes the request fail if it is wrong.

Important:
    - IGNORE THE COOKIE HEADER
    - Ignore common headers like user-agent, sec-ch-ua, accept-encoding, referer, etc.
    - Exclude arbitrary user input or general data that can be hardcoded, such as amounts, notes, messages, actions.
    - Only output the values, not the keys.
"""

_INPUTS_PROMPT = """cURL: {curl}
Input Variables: {inputs}

Task:
Identify which input variables (the value of each key-value pair above) are present in the cURL command.

Important:
- Only include variables that are provided above and found in the cURL.
- The key of an input variable is a description of it.
- The value should closely match the value in the cURL command. No substitutions.
"""

_SIMPLEST_PROMPT = """{curls}
Task:
Given the above list of cURL commands, find the index of the one with the fewest dependencies and variables.
The index is 0-based (the first item has index 0).
"""

_SYSTEM_JSON = (
    "You are a JSON API. You ONLY output valid JSON objects. "
    "No text, no markdown, no explanation. Just the JSON object."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")
_OBJECT_RE = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}")


def format_endpoints(endpoints: Sequence[EndpointSummary]) -> str:
    """Numbered endpoint listing, easier for small models to parse than a tuple dump."""
    lines = []
    for i, ep in enumerate(endpoints, 1):
        lines.append(f"{i}. {ep.method} {ep.url}")
        lines.append(f"   Response: {ep.mime_type} | Preview: {ep.preview}")
    return "\n".join(lines)


def extract_json(text: str) -> Optional[Dict[str, Any]]:
    """Pull a JSON object out of a reply that may carry fences or chatter."""
    if not text:
        return None
    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    try:
        parsed = json.loads(cleaned)
    except ValueError:
        match = _OBJECT_RE.search(cleaned)
        if not match:
            return None
        try:
            parsed = json.loads(match.group(0))
        except ValueError:
            return None
    return parsed if isinstance(parsed, dict) else None


class LLMOracle(Oracle):
    """Oracle that asks a language model for JSON answers and validates them."""

    def __init__(self, llm: Any = None, max_prompt_chars: Optional[int] = None, max_tokens: int = 1024):
        if llm is None:
            from .llm import LocalLLM

            llm = LocalLLM()
        if max_prompt_chars is None:
            from .config import MAX_PROMPT_CHARS

            max_prompt_chars = MAX_PROMPT_CHARS
            if not max_prompt_chars and getattr(llm, "is_local", False):
                max_prompt_chars = 8000
        self.llm = llm
        self.max_prompt_chars = max_prompt_chars
        self.max_tokens = max_tokens

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def identify_target(self, goal: str, endpoints: Sequence[EndpointSummary]) -> str:
        prompt = _TARGET_PROMPT.format(endpoints=format_endpoints(endpoints), goal=goal)
        result = self._invoke(prompt, "identify_end_url", _TARGET_SCHEMA)
        url = result.get("url")
        if not isinstance(url, str):
            raise OracleError(f"identify_end_url returned a non-string url: {url!r}")
        return url.strip()

    def identify_dynamic_parts(self, curl: str) -> List[str]:
        result = self._invoke(_DYNAMIC_PARTS_PROMPT.format(curl=curl), "identify_dynamic_parts", _DYNAMIC_PARTS_SCHEMA)
        parts = result.get("dynamic_parts")
        if not isinstance(parts, list):
            raise OracleError(f"identify_dynamic_parts returned {type(parts).__name__}, expected a list")
        return [p for p in parts if isinstance(p, str) and p]

    def identify_bound_inputs(self, curl: str, inputs: Mapping[str, str]) -> Dict[str, str]:
        prompt = _INPUTS_PROMPT.format(curl=curl, inputs=json.dumps(dict(inputs)))
        result = self._invoke(prompt, "identify_input_variables", _INPUTS_SCHEMA)
        items = result.get("identified_variables")
        if not isinstance(items, list):
            raise OracleError("identify_input_variables did not return a list")
        bound: Dict[str, str] = {}
        for item in items:
            if not isinstance(item, dict):
                continue
            name = item.get("variable_name")
            value = item.get("variable_value")
            # Names the caller never supplied are hallucinations
            if isinstance(name, str) and isinstance(value, str) and name in inputs and value:
                bound[name] = value
        return bound

    def pick_simplest(self, curls: Sequence[str]) -> int:
        prompt = _SIMPLEST_PROMPT.format(curls=json.dumps(list(curls)))
        result = self._invoke(prompt, "get_simplest_curl_index", _SIMPLEST_SCHEMA)
        index = result.get("index")
        if isinstance(index, bool) or not isinstance(index, (int, float, str)):
            raise OracleError(f"get_simplest_curl_index returned {index!r}")
        try:
            return int(index)
        except (ValueError, OverflowError) as exc:
            raise OracleError(f"get_simplest_curl_index returned {index!r}") from exc

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _truncate(self, prompt: str) -> str:
        if not self.max_prompt_chars or len(prompt) <= self.max_prompt_chars:
            return prompt
        logger.info("Prompt truncated from %d to %d chars", len(prompt), self.max_prompt_chars)
        return prompt[: self.max_prompt_chars] + "\n\n[...truncated due to context limit]"

    def _invoke(self, prompt: str, function_name: str, schema: Dict[str, Any]) -> Dict[str, Any]:
        """Ask for a JSON object matching ``schema``; retry once if the reply isn't JSON."""
        prompt = self._truncate(prompt)
        messages = [
            {"role": "system", "content": _SYSTEM_JSON},
            {
                "role": "user",
                "content": f"{prompt}\nRespond with ONLY a JSON object matching this schema:\n{json.dumps(schema)}",
            },
        ]
        reply = self.llm.chat_completion(messages, max_tokens=self.max_tokens, temperature=0.1)
        if reply is None:
            raise OracleError(f"{function_name}: LLM provider returned no response")

        parsed = extract_json(reply)
        if parsed is not None:
            return parsed

        logger.info("%s: first reply wasn't JSON, retrying", function_name)
        messages.append({"role": "assistant", "content": reply})
        messages.append({
            "role": "user",
            "content": "That was not valid JSON. Reply with ONLY the JSON object, nothing else.",
        })
        reply = self.llm.chat_completion(messages, max_tokens=self.max_tokens, temperature=0.1)
        parsed = extract_json(reply or "")
        if parsed is None:
            excerpt = (reply or "")[:200]
            raise OracleError(f"{function_name}: could not extract JSON from reply: {excerpt!r}")
        return parsed
