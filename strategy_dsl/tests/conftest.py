import sys
import types
from pathlib import Path

import pytest

# Ensure repository root is available for imports
REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from strategy_dsl import CompileOptions, compile_source  # noqa: E402


class RecordingStrategy:
    """Stand-in for the runtime BaseStrategy: records orders instead of routing them."""

    def __init__(self, **kwargs):
        self.config = kwargs
        self.orders = []
        self.indicator_values = {}
        self.signal_values = {}
        self.positions = {}

    def _order(self, side, symbol, quantity, price=None):
        self.orders.append((side, symbol, quantity, price))
        return len(self.orders)

    def buy(self, symbol, quantity, price=None):
        return self._order("buy", symbol, quantity, price)

    def sell(self, symbol, quantity, price=None):
        return self._order("sell", symbol, quantity, price)

    def short(self, symbol, quantity, price=None):
        return self._order("short", symbol, quantity, price)

    def cover(self, symbol, quantity, price=None):
        return self._order("cover", symbol, quantity, price)

    def set_indicator(self, name, value):
        self.indicator_values[name] = value

    def get_indicator(self, name):
        return self.indicator_values.get(name)

    def set_signal(self, name, value):
        self.signal_values[name] = value

    def get_signal(self, name):
        return self.signal_values.get(name)

    def get_position(self, symbol):
        return self.positions.get(symbol, 0)

    def get_portfolio(self):
        return {"positions": dict(self.positions)}


class FakeIndicators:
    """Every attribute is an indicator function returning ``values[name]`` (default 0.0)."""

    def __init__(self):
        self.values = {}
        self.calls = []

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)

        def indicator(*args):
            self.calls.append((name, args))
            return self.values.get(name, 0.0)

        return indicator


def make_bar(symbol="SPY", close=100.0, **fields):
    values = {"open": close, "high": close, "low": close, "close": close, "volume": 1_000_000}
    values.update(fields)
    return types.SimpleNamespace(symbol=symbol, **values)


@pytest.fixture
def runtime(monkeypatch):
    module = types.ModuleType("strategy_runtime")
    module.BaseStrategy = RecordingStrategy
    module.indicators = FakeIndicators()
    monkeypatch.setitem(sys.modules, "strategy_runtime", module)
    return module


@pytest.fixture
def load(runtime, monkeypatch):
    """Compile DSL text and execute the generated module; returns its namespace."""

    def _load(source, **options):
        result = compile_source(source, CompileOptions(**options))
        assert result.errors == (), [e.message for e in result.errors]
        module = types.ModuleType("generated_strategy")
        monkeypatch.setitem(sys.modules, "generated_strategy", module)
        exec(compile(result.code, "generated_strategy.py", "exec"), module.__dict__)
        return module

    return _load


@pytest.fixture
def bar():
    return make_bar
