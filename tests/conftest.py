import sys
import types

import pytest

from strategy_dsl import CompileOptions, compile_source


class OrderBook:
    """Minimal BaseStrategy: keeps the orders a strategy places."""

    def __init__(self, **kwargs):
        self.orders = []
        self.indicator_values = {}

    def buy(self, symbol, quantity, price=None):
        self.orders.append(("buy", symbol, quantity, price))

    def sell(self, symbol, quantity, price=None):
        self.orders.append(("sell", symbol, quantity, price))

    def set_indicator(self, name, value):
        self.indicator_values[name] = value

    def get_indicator(self, name):
        return self.indicator_values.get(name)


@pytest.fixture
def run_dsl(monkeypatch):
    """Compile DSL text and exec the result against a stub runtime; returns the namespace."""
    runtime = types.ModuleType("strategy_runtime")
    runtime.BaseStrategy = OrderBook
    runtime.indicators = types.SimpleNamespace(rsi=lambda series, period: 25.0)
    monkeypatch.setitem(sys.modules, "strategy_runtime", runtime)

    def run(source, **options):
        result = compile_source(source, CompileOptions(**options))
        assert result.errors == (), [e.message for e in result.errors]
        namespace = {}
        exec(compile(result.code, "<generated>", "exec"), namespace)
        return namespace

    return run
