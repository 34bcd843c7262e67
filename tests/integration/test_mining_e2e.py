"""End-to-end mining over a realistic ICT knowledge-graph snapshot.

Validates the full flow:
  dict records → boundary coercion → GraphIndex → structure / usage / outcomes
  → training graph → insights (mocked LLM over HTTP, then offline fallback)

Uses httpx.MockTransport so no Ollama or OpenAI endpoint is needed.
"""
import json

import httpx
import pytest

from config.settings import Settings
from kgminer.core.engine import KnowledgeGraphMiner
from kgminer.core.insights import InsightSynthesizer
from kgminer.core.router import LLMRouter
from kgminer.core.types import PatternKind, TrainingPatternKind


# ─────────────────────── Fixtures ─────────────────────────────────────────────


def _trade(id, result, session, pair, grade, model="Silver Bullet", root_cause=None):
    metadata = {
        "execution": {"result": result},
        "time": {"session": session, "killzone": f"{session} KZ"},
        "market": {"pair": pair},
        "grading": {"total_score": grade},
        "setup": {"model": model},
    }
    if root_cause:
        metadata["failure_analysis"] = {"root_cause": root_cause}
    return {"id": id, "type": "trade", "name": id.upper(), "metadata": metadata}


@pytest.fixture
def snapshot():
    entities = [
        {"id": "fvg", "type": "concept", "name": "Fair Value Gap"},
        {"id": "ob", "type": "concept", "name": "Order Block"},
        {"id": "liq", "type": "concept", "name": "Liquidity Sweep"},
        {"id": "bb", "type": "concept", "name": "Breaker Block"},
        {"id": "sb", "type": "model", "name": "Silver Bullet"},
        {"id": "ote", "type": "model", "name": "OTE"},
        {"id": "doc", "type": "document", "name": "FVG Handbook"},
        _trade("w1", "WIN", "London", "EURUSD", 8.5),
        _trade("w2", "WIN", "London", "EURUSD", 8.0),
        _trade("w3", "WIN", "London", "EURUSD", 7.5),
        _trade("w4", "WIN", "NY", "GBPUSD", 7.0, model="OTE"),
        _trade("l1", "LOSS", "NY", "GBPUSD", 4.0, model="OTE", root_cause="Entered before displacement"),
        _trade("l2", "LOSS", "NY", "GBPUSD", 5.0, model="OTE", root_cause="Entered before displacement"),
        _trade("l3", "LOSS", "Asia", "GBPUSD", 3.5, root_cause="News spike"),
    ]
    relationships = [
        {"id": "u1", "type": "CONCEPT_USED_IN_MODEL", "sourceId": "fvg", "targetId": "sb"},
        {"id": "u2", "type": "CONCEPT_USED_IN_MODEL", "sourceId": "liq", "targetId": "sb"},
        {"id": "u3", "type": "CONCEPT_USED_IN_MODEL", "sourceId": "ob", "targetId": "ote"},
        {"id": "d1", "type": "DOCUMENT_DEFINES", "sourceId": "doc", "targetId": "fvg"},
        {"id": "x1", "type": "CONCEPT_RELATED_TO", "sourceId": "fvg", "targetId": "ob"},
        {"id": "x2", "type": "CONCEPT_RELATED_TO", "sourceId": "ob", "targetId": "fvg"},
        {"id": "gone", "type": "CONCEPT_RELATED_TO", "sourceId": "fvg", "targetId": "deleted-concept"},
    ]
    for trade, model in (("w1", "sb"), ("w2", "sb"), ("w3", "sb"), ("l3", "sb"),
                         ("w4", "ote"), ("l1", "ote"), ("l2", "ote")):
        relationships.append(
            {"id": f"p-{trade}", "type": "MODEL_PRODUCES_TRADE", "sourceId": model, "targetId": trade}
        )
    uses = {
        "w1": ["fvg", "liq", "ob"], "w2": ["fvg", "liq"], "w3": ["fvg", "liq"],
        "w4": ["ob"], "l1": ["ob", "bb"], "l2": ["bb"], "l3": ["fvg"],
    }
    for trade, concepts in uses.items():
        for c in concepts:
            relationships.append(
                {"id": f"c-{trade}-{c}", "type": "TRADE_USES_CONCEPT", "sourceId": trade, "targetId": c}
            )
    return entities, relationships


# ─────────────────────── Deterministic pass ──────────────────────────────────


def test_full_mining_pass(snapshot):
    result = KnowledgeGraphMiner().mine(*snapshot)

    assert result.dangling_relationship_ids == ["gone"]
    assert (result.trades_analyzed, result.winning_count, result.losing_count) == (7, 4, 3)

    chains = {p.id: p for p in result.structural_patterns if p.kind == PatternKind.CHAIN}
    assert chains["chain-fvg-sb"].strength == pytest.approx(0.4)
    assert chains["chain-ob-ote"].strength == pytest.approx(0.3)

    # fvg: sb trades (w1,w2,w3,l3) plus direct use → 3 wins of 4
    assert result.concept_scores["Fair Value Gap"].win_rate == pytest.approx(0.75)
    assert result.concept_scores["Breaker Block"].win_rate == 0.0
    assert result.model_scores["Silver Bullet"].win_rate == pytest.approx(0.75)
    assert result.model_scores["OTE"].win_rate == pytest.approx(1 / 3)

    usage = {u.concept.name: u for u in result.concept_usage}
    assert usage["Fair Value Gap"].common_pairings[0].count == 2

    ids = [p.id for p in result.training_patterns]
    assert "success-combo-fair-value-gap-liquidity-sweep" in ids
    assert "session-success-london" in ids
    assert "pair-success-eurusd" in ids
    assert "pair-failure-gbpusd" in ids
    assert "failure-entered-before-displacement" in ids
    assert all(
        p.kind == TrainingPatternKind.SUCCESS for p in result.training_patterns
        if p.id.startswith("session-")
    )

    factors = {f.factor for f in result.quality_factors}
    assert factors == {"High Concept Confluence", "Setup Quality Score", "Optimal Time Entry"}


def test_two_passes_agree(snapshot):
    miner = KnowledgeGraphMiner()
    assert miner.mine(*snapshot) == miner.mine(*snapshot)


# ─────────────────────── Training with text generation ───────────────────────


@pytest.mark.asyncio
async def test_train_with_mocked_ollama(snapshot):
    prompts = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "qwen2.5:7b"}]})
        prompts.append(json.loads(request.content)["prompt"])
        return httpx.Response(200, json={"response": json.dumps({"insights": [{
            "category": "market_conditions",
            "statement": "London EURUSD is where your edge lives",
            "evidence": ["3/3 London wins", "EURUSD 100%"],
            "action": "Trade London EURUSD first",
            "priority": "high",
        }]})})

    settings = Settings(ollama_base_url="http://ollama.test", insight_backend="ollama", keyring_service="")
    router = LLMRouter(settings=settings, transport=httpx.MockTransport(handler))
    miner = KnowledgeGraphMiner(synthesizer=InsightSynthesizer(router=router, settings=settings))

    model = await miner.train(*snapshot)
    assert model.insight_source == "llm"
    assert model.insights[0].statement == "London EURUSD is where your edge lives"
    assert "Total trades: 7" in prompts[0]
    # raw trade metadata never leaves the process
    assert "total_score" not in prompts[0]


@pytest.mark.asyncio
async def test_train_falls_back_when_backend_errors(snapshot):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "qwen2.5:7b"}]})
        return httpx.Response(503, text="overloaded")

    settings = Settings(ollama_base_url="http://ollama.test", insight_backend="ollama", keyring_service="")
    router = LLMRouter(settings=settings, transport=httpx.MockTransport(handler))
    miner = KnowledgeGraphMiner(synthesizer=InsightSynthesizer(router=router, settings=settings))

    model = await miner.train(*snapshot)
    assert model.insight_source == "fallback"
    assert 1 <= len(model.insights) <= 5
    assert model.insights[0].category == "concept_effectiveness"

    w1 = miner.index(*snapshot).resolve("w1")
    setup = miner.score_setup(w1, model, *snapshot)
    assert setup.score == pytest.approx(8.0)
    assert any("success pattern" in f for f in setup.feedback)
