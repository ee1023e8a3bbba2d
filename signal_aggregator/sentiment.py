"""
Keyword sentiment/impact heuristic.

Normalizers treat this as an opaque ``text -> SentimentAnalysis`` function;
any callable with the same signature can be injected instead.
"""

import re
from dataclasses import dataclass
from typing import Callable, Tuple

POSITIVE_KEYWORDS = (
    "moon", "bullish", "pump", "surge", "rally", "breakout", "ath", "hodl",
    "buy", "long", "gain", "profit", "adoption", "breakthrough", "partnership",
    "upgrade", "launch", "green", "rise", "growth", "accumulate", "strong",
    "all time high", "new high", "to the moon", "wagmi",
)

NEGATIVE_KEYWORDS = (
    "dump", "crash", "bear", "bearish", "sell", "short", "drop", "fall",
    "dip", "correction", "loss", "scam", "rug", "hack", "exploit", "fear",
    "panic", "liquidation", "rekt", "red", "decline", "capitulation", "weak",
    "fud", "warning", "bubble", "overvalued", "ngmi",
)

IMPACT_KEYWORDS = (
    "sec", "etf", "federal", "government", "regulation", "ban", "lawsuit",
    "institutional", "whale", "exchange", "binance", "coinbase", "blackrock",
    "breaking", "major", "massive", "announcement", "listing", "delisting",
    "fork", "mainnet", "audit", "investment", "funding",
)


@dataclass(frozen=True)
class SentimentAnalysis:
    sentiment: str
    sentiment_score: float
    impact: str
    impact_score: float


SentimentAnalyzer = Callable[[str, str], SentimentAnalysis]


def _count(text: str, keywords: Tuple[str, ...]) -> int:
    return sum(len(re.findall(rf"\b{re.escape(keyword)}\b", text)) for keyword in keywords)


def analyze_sentiment(text: str, coin_symbol: str = "") -> SentimentAnalysis:
    """Score ``text`` by counting crypto-specific keywords."""
    clean_text = text.lower()

    positive = _count(clean_text, POSITIVE_KEYWORDS)
    negative = _count(clean_text, NEGATIVE_KEYWORDS)
    impact_points = _count(clean_text, IMPACT_KEYWORDS) * 2
    if coin_symbol:
        impact_points += _count(clean_text, (coin_symbol.lower(),))

    total = positive - negative
    score = max(-1.0, min(1.0, total / 10))
    if total > 0:
        sentiment = "positive"
    elif total < 0:
        sentiment = "negative"
    else:
        sentiment = "neutral"

    impact_score = min(1.0, impact_points / 10)
    if impact_score >= 0.7:
        impact = "high"
    elif impact_score >= 0.3:
        impact = "medium"
    else:
        impact = "low"

    return SentimentAnalysis(sentiment, score, impact, impact_score)
