"""Content policy for chat text: allow, flag or block, plus URL extraction."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Protocol, Tuple
from urllib.parse import urlparse

VERDICT_ALLOW = "allow"
VERDICT_FLAG = "flag"
VERDICT_BLOCK = "block"

_URL_RE = re.compile(r"(?:https?://|www\.)[^\s<>\"']+", re.IGNORECASE)
_REPEAT_RE = re.compile(r"(.)\1{5,}")
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_RE = re.compile(r"(?:\+?\d[\s.-]?){9,14}\d")
_CARD_RE = re.compile(r"\b(?:\d[ -]?){13,16}\b")

_SPAM_KEYWORDS = (
	"click here",
	"free money",
	"make money fast",
	"limited time offer",
	"act now",
	"crypto giveaway",
	"send me gift cards",
	"wire transfer",
	"investment opportunity",
	"cash app me",
)

_DEFAULT_BLOCKED_WORDS = frozenset({"kys", "killyourself"})

_SHORTENER_HOSTS = frozenset({"t.co", "bit.ly", "tinyurl.com", "rebrand.ly", "goo.gl", "ow.ly"})


@dataclass(slots=True, frozen=True)
class PolicyDecision:
	verdict: str
	risk_score: float = 0.0
	reasons: Tuple[str, ...] = ()

	@property
	def blocked(self) -> bool:
		return self.verdict == VERDICT_BLOCK

	@property
	def flagged(self) -> bool:
		return self.verdict == VERDICT_FLAG


class ContentPolicy(Protocol):
	async def classify(self, text: str) -> PolicyDecision:
		...

	def extract_urls(self, text: str) -> List[str]:
		...


def extract_urls(text: str) -> List[str]:
	seen: List[str] = []
	for match in _URL_RE.findall(text or ""):
		url = match.rstrip(".,;:!?)")
		if url not in seen:
			seen.append(url)
	return seen


def _host(url: str) -> str:
	candidate = url if "://" in url else f"http://{url}"
	return (urlparse(candidate).hostname or "").lower()


@dataclass
class HeuristicContentPolicy:
	"""Score text with cheap heuristics; the score picks the verdict."""

	blocked_words: frozenset[str] = _DEFAULT_BLOCKED_WORDS
	suspicious_hosts: frozenset[str] = frozenset()
	flag_threshold: float = 0.3
	block_threshold: float = 0.8
	spam_keywords: Iterable[str] = field(default=_SPAM_KEYWORDS)

	async def classify(self, text: str) -> PolicyDecision:
		score, reasons = self.score(text)
		if score >= self.block_threshold:
			verdict = VERDICT_BLOCK
		elif score >= self.flag_threshold:
			verdict = VERDICT_FLAG
		else:
			verdict = VERDICT_ALLOW
		return PolicyDecision(verdict=verdict, risk_score=round(min(score, 1.0), 3), reasons=tuple(reasons))

	def extract_urls(self, text: str) -> List[str]:
		return extract_urls(text)

	def score(self, text: str) -> Tuple[float, List[str]]:
		lowered = (text or "").lower()
		score = 0.0
		reasons: List[str] = []

		if any(keyword in lowered for keyword in self.spam_keywords):
			score += 0.3
			reasons.append("spam_keywords")

		letters = [ch for ch in text if ch.isalpha()]
		if len(letters) >= 10:
			upper_ratio = sum(1 for ch in letters if ch.isupper()) / len(letters)
			if upper_ratio > 0.7:
				score += 0.2
				reasons.append("excessive_caps")

		if _REPEAT_RE.search(text):
			score += 0.2
			reasons.append("repetition")

		words = set(re.findall(r"[a-z0-9']+", lowered))
		if words & self.blocked_words:
			score += 0.8
			reasons.append("blocked_word")

		if _EMAIL_RE.search(text) or _PHONE_RE.search(text) or _CARD_RE.search(text):
			score += 0.5
			reasons.append("personal_info")

		urls = extract_urls(text)
		if urls:
			score += 0.2
			reasons.append("links")
			hosts = {_host(url) for url in urls}
			if hosts & (_SHORTENER_HOSTS | self.suspicious_hosts):
				score += 0.3
				reasons.append("suspicious_link")
		return score, reasons
