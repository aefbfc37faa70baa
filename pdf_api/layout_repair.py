"""
AI Layout Repair

Asks Google Gemini to repair broken HTML before rendering. Repair is
best-effort: any failure (missing key, network error, empty answer) returns
the original markup unchanged so the conversion still proceeds.
"""

import logging
import re
from typing import List, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
NO_CHANGES_NEEDED = "NO_CHANGES_NEEDED"

# Prompts sent verbatim to the model
FIX_PROMPT = """Please fix this broken HTML code by correcting any structural issues such as:
1. Unclosed HTML tags
2. Missing closing tags
3. Malformed table structures
4. Incorrect nesting
5. Missing DOCTYPE or basic HTML structure

Detected issues: {issues}

Broken HTML to fix:
{html}

IMPORTANT: Respond with ONLY the corrected HTML code. Do not include any markdown formatting, code blocks, or explanations. Just return the clean, valid HTML."""

ANALYZE_PROMPT = """Please analyze this HTML code for potential broken layouts, missing CSS, or structural issues that could cause rendering problems in PDF generation.

Focus on:
1. Layout issues that might not render properly in PDF
2. Missing or broken CSS that could cause layout problems
3. Elements with problematic positioning (absolute, fixed)
4. Overflow issues that might cause content to be cut off
5. Missing viewport meta tags
6. CSS that might not be PDF-friendly

HTML to analyze:
{html}

IMPORTANT: If changes are needed, respond with ONLY the corrected HTML code. Do not include any markdown formatting, code blocks, or explanations. If no changes are needed, respond with exactly "NO_CHANGES_NEEDED"."""

_CHECKED_TAGS = ("p", "div", "span", "table", "tr", "td")
_FENCE_START = re.compile(r"^```(?:html)?\s*", re.I)
_FENCE_END = re.compile(r"\s*```$")


def detect_structural_issues(html: str) -> List[str]:
    """
    Cheap heuristics for markup Chromium is likely to render badly.

    Returns:
        Human-readable issue labels, empty when nothing was found
    """
    issues = []
    lowered = html.lower()

    for tag in _CHECKED_TAGS:
        opened = len(re.findall(rf"<{tag}[\s>]", lowered))
        closed = lowered.count(f"</{tag}>")
        if opened > closed:
            issues.append(f"unclosed {tag} tags")

    if "<table" in lowered and "<tbody" not in lowered and "<thead" not in lowered:
        issues.append("malformed table structure")

    if "<!doctype" not in lowered:
        issues.append("missing DOCTYPE")

    return issues


def strip_code_fences(text: str) -> str:
    """Remove ```html ... ``` wrappers the model adds despite instructions."""
    cleaned = text.strip()
    cleaned = _FENCE_START.sub("", cleaned)
    cleaned = _FENCE_END.sub("", cleaned)
    return cleaned.strip()


class LayoutRepairer:
    """Gemini generateContent client specialised for HTML repair."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-2.0-flash",
        timeout_seconds: int = 30,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    @property
    def endpoint(self) -> str:
        return f"{GEMINI_API_BASE}/{self.model}:generateContent"

    @retry(
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _generate(self, prompt: str) -> Optional[str]:
        """Single generateContent call; returns the first candidate's text."""
        response = requests.post(
            self.endpoint,
            json={"contents": [{"parts": [{"text": prompt}]}]},
            headers={
                "Content-Type": "application/json",
                "X-goog-api-key": self.api_key,
            },
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()
        data = response.json()

        candidates = data.get("candidates") or []
        if not candidates:
            return None
        parts = (candidates[0].get("content") or {}).get("parts") or []
        if not parts:
            return None
        return parts[0].get("text")

    def repair(self, html: str) -> str:
        """
        Return repaired HTML, or the input unchanged.

        Structural problems go to the fix prompt first; otherwise (or when the
        fix yields nothing) the analysis prompt decides whether to rewrite.
        """
        if not self.enabled:
            logger.info("Layout repair requested but GEMINI_API_KEY is not set, skipping")
            return html

        try:
            issues = detect_structural_issues(html)
            if issues:
                logger.info(f"Layout repair: structural issues detected ({', '.join(issues)})")
                fixed = self._generate(FIX_PROMPT.format(issues=", ".join(issues), html=html))
                if fixed and fixed.strip() != NO_CHANGES_NEEDED:
                    cleaned = strip_code_fences(fixed)
                    if cleaned:
                        logger.info(f"Layout repair: structure fixed ({len(html)} -> {len(cleaned)} chars)")
                        return cleaned

            answer = self._generate(ANALYZE_PROMPT.format(html=html))
            if not answer:
                logger.warning("Layout repair: empty response from Gemini")
                return html
            if answer.strip() == NO_CHANGES_NEEDED:
                logger.info("Layout repair: no changes needed")
                return html

            cleaned = strip_code_fences(answer)
            if not cleaned:
                return html
            logger.info(f"Layout repair: layout corrected ({len(html)} -> {len(cleaned)} chars)")
            return cleaned

        except Exception as e:
            logger.warning(f"Layout repair failed, using original HTML: {e}")
            return html
