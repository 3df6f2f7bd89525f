"""Client wrapper around the Google Gemini Generative Language API."""
from __future__ import annotations

import json
import time
from typing import Any, Dict, List, Optional, Sequence

import requests
from flask import current_app


class InlineImage:
    """Base64 image data sent alongside a prompt."""

    __slots__ = ('data', 'mime_type')

    def __init__(self, data: str, mime_type: str):
        self.data = data
        self.mime_type = mime_type

    def to_part(self) -> Dict[str, Any]:
        return {"inlineData": {"mimeType": self.mime_type, "data": self.data}}


class GeminiClient:
    """Lightweight client for structured content generation via Gemini.

    One client is built per signed-in teacher with that teacher's API key and
    dropped again at logout.
    """

    DEFAULT_MODEL = "gemini-3-pro-preview"
    DEFAULT_FALLBACK_MODEL = "gemini-2.5-flash"
    DEFAULT_API_ROOT = "https://generativelanguage.googleapis.com/v1beta/models"
    DEFAULT_TIMEOUT = 120
    MAX_RETRIES = 5
    RETRY_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504}
    BACKOFF_INITIAL_SECONDS = 1.5
    BACKOFF_MAX_SECONDS = 30

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        fallback_model: Optional[str] = None,
        api_root: Optional[str] = None,
        timeout: Optional[int] = None,
        enable_fallback_on_max_tokens: bool = True,
    ):
        self.api_key = (api_key or "").strip()
        self.model = model or self.DEFAULT_MODEL
        self.fallback_model = fallback_model or self.DEFAULT_FALLBACK_MODEL
        self.api_root = (api_root or self.DEFAULT_API_ROOT).rstrip("/")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.enable_fallback_on_max_tokens = enable_fallback_on_max_tokens

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _endpoint(self, model: str, method: str = "generateContent") -> str:
        return f"{self.api_root}/{model}:{method}"

    @staticmethod
    def _contents(prompt: str, images: Optional[Sequence[InlineImage]] = None) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = [image.to_part() for image in images or ()]
        parts.append({"text": prompt})
        return [{"parts": parts}]

    def count_tokens(self, text: str, model: Optional[str] = None) -> Optional[int]:
        """Cheap authenticated call used to check that the API key works."""
        if not self.is_configured:
            return None
        payload = {"contents": self._contents(text)}
        data = self._request(payload, model or self.fallback_model, method="countTokens", disable_retries=True)
        total = data.get("totalTokens")
        return int(total) if isinstance(total, (int, float)) else None

    def validate_key(self, model: Optional[str] = None) -> bool:
        try:
            return self.count_tokens("validation_test", model=model) is not None
        except requests.exceptions.RequestException as exc:
            current_app.logger.warning("Gemini API key validation failed: %s", exc)
            return False

    def generate_json(
        self,
        prompt: str,
        temperature: float = 0.8,
        system_instruction: Optional[str] = None,
        response_mime: str = "application/json",
        response_schema: Optional[Dict[str, Any]] = None,
        max_output_tokens: Optional[int] = None,
        model_override: Optional[str] = None,
        images: Optional[Sequence[InlineImage]] = None,
        disable_retries: bool = False,
    ) -> Optional[Any]:
        """Send a prompt and attempt to parse JSON out of the response.

        Args:
            prompt: The prompt to send to Gemini
            temperature: Temperature for generation (0.0-1.0)
            system_instruction: Optional system instruction
            response_mime: MIME type for response (default: application/json)
            response_schema: Optional OpenAPI-style schema the output must follow
            max_output_tokens: Optional max output tokens
            images: Optional inline images placed before the prompt text

        Returns:
            Parsed JSON response, or None on failure
        """
        text = self._generate(
            prompt,
            generation_config=self._generation_config(temperature, response_mime, response_schema, max_output_tokens),
            system_instruction=system_instruction,
            model_override=model_override,
            images=images,
            disable_retries=disable_retries,
        )
        if not text:
            return None

        parsed = self._robust_parse_json(text)
        if parsed is None:
            current_app.logger.error(
                "Gemini JSON parsing failed. Text length: %s, First 500 chars: %s",
                len(text),
                text[:500]
            )
        return parsed

    def generate_text(
        self,
        prompt: str,
        images: Optional[Sequence[InlineImage]] = None,
        model_override: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> Optional[str]:
        """Send a prompt (optionally with images) and return the raw text."""
        generation_config: Dict[str, Any] = {}
        if temperature is not None:
            generation_config["temperature"] = temperature
        return self._generate(
            prompt,
            generation_config=generation_config,
            model_override=model_override,
            images=images,
        )

    @staticmethod
    def _generation_config(
        temperature: float,
        response_mime: str,
        response_schema: Optional[Dict[str, Any]],
        max_output_tokens: Optional[int],
    ) -> Dict[str, Any]:
        config: Dict[str, Any] = {
            "temperature": temperature,
            "responseMimeType": response_mime,
        }
        if response_schema is not None:
            config["responseSchema"] = response_schema
        if max_output_tokens is not None:
            config["maxOutputTokens"] = max_output_tokens
        return config

    def _generate(
        self,
        prompt: str,
        generation_config: Dict[str, Any],
        system_instruction: Optional[str] = None,
        model_override: Optional[str] = None,
        images: Optional[Sequence[InlineImage]] = None,
        disable_retries: bool = False,
    ) -> str:
        if not self.is_configured:
            current_app.logger.error("Gemini API not configured - API key missing")
            return ""

        payload: Dict[str, Any] = {"contents": self._contents(prompt, images)}
        if generation_config:
            payload["generationConfig"] = generation_config
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        primary_model = model_override or self.model
        data = self._request(payload, primary_model, disable_retries=disable_retries)
        text, finish_reason = self._extract_text_and_finish_reason(data)

        # If MAX_TOKENS occurred with empty text, optionally retry with a fallback model
        if (
            not text
            and finish_reason == "MAX_TOKENS"
            and self.enable_fallback_on_max_tokens
            and self.fallback_model
            and self.fallback_model != primary_model
        ):
            current_app.logger.warning(
                "Gemini returned MAX_TOKENS with empty content on model=%s; retrying once with fallback model=%s",
                primary_model,
                self.fallback_model,
            )
            data = self._request(payload, self.fallback_model, disable_retries=disable_retries)
            text, finish_reason = self._extract_text_and_finish_reason(data)

        if not text:
            candidates = data.get("candidates") or []
            current_app.logger.error(
                "Gemini response contained empty text. Finish reason: %s, Candidates count: %s, Full response: %s",
                finish_reason,
                len(candidates),
                str(data)[:500]
            )
        return text

    def _request(
        self,
        payload: Dict[str, Any],
        model: str,
        method: str = "generateContent",
        disable_retries: bool = False,
    ) -> Dict[str, Any]:
        """Perform a single HTTP request to Gemini with retries."""
        url = self._endpoint(model, method)
        attempt = 0
        backoff = self.BACKOFF_INITIAL_SECONDS
        max_attempts = 1 if disable_retries else self.MAX_RETRIES

        while attempt < max_attempts:
            try:
                response = requests.post(
                    f"{url}?key={self.api_key}",
                    json=payload,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                try:
                    data = response.json()
                except ValueError as exc:
                    current_app.logger.error("Failed to parse Gemini response as JSON: %s", exc)
                    return {}
                return data if isinstance(data, dict) else {}

            except requests.exceptions.HTTPError as exc:
                status_code = exc.response.status_code if exc.response is not None else None
                if status_code in self.RETRY_STATUS_CODES and attempt < max_attempts - 1:
                    wait = min(backoff, self.BACKOFF_MAX_SECONDS)
                    current_app.logger.warning(
                        "Gemini HTTP %s for model %s. Retrying in %.1fs (attempt %s/%s).",
                        status_code,
                        model,
                        wait,
                        attempt + 1,
                        max_attempts,
                    )
                    time.sleep(wait)
                    attempt += 1
                    backoff *= 2
                    continue
                current_app.logger.error("Gemini HTTP error: %s - %s", status_code, exc)
                raise

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                if attempt < max_attempts - 1:
                    wait = min(backoff, self.BACKOFF_MAX_SECONDS)
                    current_app.logger.warning(
                        "Gemini request timed out/connection error (%s). Retrying in %.1fs (attempt %s/%s).",
                        exc,
                        wait,
                        attempt + 1,
                        max_attempts,
                    )
                    time.sleep(wait)
                    attempt += 1
                    backoff *= 2
                    continue
                current_app.logger.error("Gemini request failed after retries due to timeout/connection issue: %s", exc)
                raise

        return {}

    @staticmethod
    def strip_code_fence(text: str) -> str:
        """Remove a surrounding markdown code fence (```json, ```text, ...)."""
        text = (text or "").strip()
        if not text.startswith("```"):
            return text
        parts = text.split("```")
        body = parts[1] if len(parts) > 1 else text
        first_line, _, rest = body.partition("\n")
        if rest and first_line.strip().isalpha():
            body = rest
        return body.strip()

    @staticmethod
    def _parse_json_response(text: str) -> Optional[Any]:
        """Attempt to parse JSON payload even if wrapped in fences."""
        if not text:
            return None
        try:
            return json.loads(GeminiClient.strip_code_fence(text))
        except json.JSONDecodeError as e:
            current_app.logger.debug(f"JSON decode error at position {e.pos}: {e.msg}")
            return None

    @staticmethod
    def _robust_parse_json(text: str) -> Optional[Any]:
        """Parse JSON with additional heuristics for stray prose or truncated wrappers."""
        parsed = GeminiClient._parse_json_response(text)
        if parsed is not None:
            return parsed

        candidate = GeminiClient._extract_json_substring(text)
        if candidate:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                return None
        return None

    @staticmethod
    def _extract_json_substring(text: str) -> Optional[str]:
        """Extract the largest plausible JSON object/array substring from text."""
        if not text:
            return None

        start_obj = text.find("{")
        end_obj = text.rfind("}")
        start_arr = text.find("[")
        end_arr = text.rfind("]")

        candidates = []
        if start_obj != -1 and end_obj != -1 and end_obj > start_obj:
            json_str = text[start_obj : end_obj + 1]
            candidates.append(json_str)
            try:
                json.loads(json_str)
                return json_str
            except json.JSONDecodeError:
                # Try to find a better ending brace by counting
                brace_count = 0
                for i in range(start_obj, len(text)):
                    if text[i] == '{':
                        brace_count += 1
                    elif text[i] == '}':
                        brace_count -= 1
                        if brace_count == 0:
                            better_json = text[start_obj : i + 1]
                            try:
                                json.loads(better_json)
                                return better_json
                            except json.JSONDecodeError:
                                pass

        if start_arr != -1 and end_arr != -1 and end_arr > start_arr:
            candidates.append(text[start_arr : end_arr + 1])

        if not candidates:
            return None
        return candidates[0]

    @staticmethod
    def _extract_text_and_finish_reason(data: Dict[str, Any]) -> tuple[str, Optional[str]]:
        """Extract the first non-empty text from candidates and return with finish reason."""
        candidates = data.get("candidates") or []
        if not candidates:
            prompt_feedback = data.get("promptFeedback", {})
            block_reason = prompt_feedback.get("blockReason")
            if block_reason:
                current_app.logger.error(
                    "Gemini blocked request. Reason: %s, Safety ratings: %s",
                    block_reason,
                    prompt_feedback.get("safetyRatings", []),
                )
            else:
                current_app.logger.warning("Gemini response missing candidates. Full response: %s", data)
            return "", None

        fallback_finish: Optional[str] = None
        for cand in candidates:
            finish_reason = cand.get("finishReason")
            if not fallback_finish:
                fallback_finish = finish_reason
            parts = (cand.get("content") or {}).get("parts", [])
            collected = []
            for part in parts:
                txt = part.get("text") if isinstance(part, dict) else None
                if isinstance(txt, str) and txt.strip():
                    collected.append(txt)
            if collected:
                return "".join(collected), finish_reason

        return "", fallback_finish
