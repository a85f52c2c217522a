import pytest

from session_core.domain.budget.model_selector import (
    ModelCatalog, ModelTier, cost_of_usage, estimate_cost, estimate_tokens, select_model
)


def test_estimate_tokens_rounds_up_per_four_characters():
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


@pytest.mark.parametrize("feature,tokens,has_session,tier", [
    ("chat", 500, True, ModelTier.STANDARD),
    ("chat", 500, False, ModelTier.FAST),
    ("translation", 500, True, ModelTier.FAST),
    ("search", 500, True, ModelTier.FAST),
    ("research", 500, False, ModelTier.PRO),
    ("image_analysis", 500, True, ModelTier.PRO),
    ("translation", 150_000, True, ModelTier.PRO),
])
def test_select_model_routing(feature, tokens, has_session, tier):
    assert select_model(feature, tokens, has_session).tier == tier


def test_select_model_is_deterministic():
    first = select_model("chat", 1234, True)
    assert all(select_model("chat", 1234, True) == first for _ in range(10))


def test_select_model_uses_catalog_names():
    catalog = ModelCatalog(fast="tiny", standard="medium", pro="large")

    assert select_model("chat", 10, True, catalog).model == "medium"
    assert select_model("research", 10, True, catalog).model == "large"


def test_estimated_cost_includes_expected_output():
    # 1M input at 0.15 plus 0.8M output at 0.60
    assert estimate_cost("gemini-2.5-flash", 1_000_000) == pytest.approx(0.15 + 0.48)
    assert cost_of_usage("gemini-2.5-pro", 1_000_000, 1_000_000) == pytest.approx(6.25)


def test_unknown_models_are_priced_like_the_pro_tier():
    assert cost_of_usage("mystery-model", 1_000_000, 0) == pytest.approx(1.25)
