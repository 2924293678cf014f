import pytest

from spark.domain.chat.policy import (
    VERDICT_ALLOW,
    VERDICT_BLOCK,
    VERDICT_FLAG,
    HeuristicContentPolicy,
    extract_urls,
)


@pytest.mark.asyncio
async def test_plain_text_is_allowed():
    decision = await HeuristicContentPolicy().classify("want to grab coffee on saturday?")
    assert decision.verdict == VERDICT_ALLOW
    assert decision.reasons == ()


@pytest.mark.asyncio
async def test_spam_keywords_are_flagged():
    decision = await HeuristicContentPolicy().classify("click here for a prize")
    assert decision.verdict == VERDICT_FLAG
    assert "spam_keywords" in decision.reasons


@pytest.mark.asyncio
async def test_blocked_word_is_blocked():
    decision = await HeuristicContentPolicy().classify("just kys")
    assert decision.verdict == VERDICT_BLOCK
    assert decision.blocked


@pytest.mark.asyncio
async def test_contact_details_and_shortened_links_score_up():
    policy = HeuristicContentPolicy()
    decision = await policy.classify("mail me at someone@example.com or see https://bit.ly/abc")
    assert decision.verdict == VERDICT_BLOCK
    assert {"personal_info", "links", "suspicious_link"} <= set(decision.reasons)


@pytest.mark.asyncio
async def test_custom_suspicious_host():
    policy = HeuristicContentPolicy(suspicious_hosts=frozenset({"evil.example"}))
    decision = await policy.classify("look https://evil.example/x")
    assert decision.verdict == VERDICT_FLAG
    assert "suspicious_link" in decision.reasons


def test_extract_urls_dedupes_and_strips_punctuation():
    text = "see https://spark.example/a, and www.spark.example. again https://spark.example/a"
    assert extract_urls(text) == ["https://spark.example/a", "www.spark.example"]
