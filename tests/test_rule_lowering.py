from types import SimpleNamespace

RSI_DIP = """
strategy RsiDip {
  indicators { rsi = RSI(close, 14); }
  rules { when (rsi < 30) { buy(100); } }
  risk { max_position = 1000; }
}
"""


def test_true_condition_places_a_market_buy(run_dsl):
    strategy = run_dsl(RSI_DIP)["RsiDip"]()
    strategy.on_bar(SimpleNamespace(symbol="AAPL", close=187.5))
    assert strategy.orders == [("buy", "AAPL", 100, None)]
    assert strategy.indicator_values == {"rsi": 25.0}


def test_rule_survives_every_optimization_level(run_dsl):
    for level in ("none", "basic", "aggressive"):
        strategy = run_dsl(RSI_DIP, optimization=level)["RsiDip"]()
        strategy.on_bar(SimpleNamespace(symbol="SPY", open=1.0, high=1.0, low=1.0, close=1.0, volume=0))
        assert strategy.orders == [("buy", "SPY", 100, None)]
