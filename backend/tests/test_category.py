import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.category import (  # noqa: E402
    CRYPTO,
    ECONOMIC,
    OTHER,
    POLITICS,
    SPORTS,
    category_from_tags,
    classify_market,
    detect_category,
    score_categories,
)


@pytest.mark.parametrize(
    "tags,expected",
    [
        (["NBA"], SPORTS),
        (["Elections", "Crypto"], POLITICS),
        (["Economy"], ECONOMIC),
        (["Bitcoin"], CRYPTO),
        (["pop-culture"], OTHER),
        ([], OTHER),
        (None, OTHER),
    ],
)
def test_category_from_tags(tags, expected):
    assert category_from_tags(tags) == expected


def test_tag_priority_prefers_sports_over_crypto():
    assert category_from_tags(["Crypto", "Sports"]) == SPORTS


def test_detect_category_requires_a_strong_hit():
    # Two moderate economic words score 2, below the confidence floor
    assert detect_category("Will the bank default?") == OTHER
    assert detect_category("Will the Fed announce a rate cut in March?") == ECONOMIC


def test_detect_category_matches_whole_words_only():
    # "ether" inside "whether" and "eth" inside "method" must not count
    assert score_categories("whether the method works")[CRYPTO] == 0
    assert detect_category("Will Ethereum flip Bitcoin?") == CRYPTO


def test_detect_category_reads_slug():
    assert detect_category(None, "nba-finals-winner-2027") == SPORTS
    assert detect_category("", "") == OTHER


def test_detect_category_tie_breaks_in_table_order():
    # trump (politics, strong) vs bitcoin (crypto, strong)
    assert detect_category("Will Trump mention Bitcoin?") == POLITICS


def test_classify_market_falls_back_to_keywords():
    assert classify_market(["Trending"], "Who will win the presidential election?") == POLITICS
    assert classify_market(["Soccer"], "Who will win the presidential election?") == SPORTS
    assert classify_market([], None, None) == OTHER
