import sys
from pathlib import Path


# Ensure src is importable
ROOT = Path(__file__).parent.parent
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))


from vipguard.health.priority import OVERRIDE, PriorityCalculator  # noqa: E402


def test_healthy_is_base():
    calc = PriorityCalculator(101, weight=50)
    assert calc.value == 101


def test_unhealthy_subtracts_weight():
    calc = PriorityCalculator(101, weight=50)
    assert calc.update_health(False) is True
    assert calc.value == 51
    # Same verdict again: no change reported
    assert calc.update_health(False) is False
    assert calc.update_health(True) is True
    assert calc.value == 101


def test_adjustments_add_up():
    calc = PriorityCalculator(100, weight=50)
    calc.set_adjustment("maintenance", -30)
    calc.set_adjustment(OVERRIDE, 5)
    assert calc.value == 75
    assert calc.adjustments == {"maintenance": -30, OVERRIDE: 5}

    assert calc.clear_adjustment("maintenance") is True
    assert calc.value == 105
    assert calc.clear_adjustment("missing") is False


def test_penalty_and_override_combine():
    calc = PriorityCalculator(100, weight=60)
    calc.update_health(False)
    calc.set_adjustment(OVERRIDE, -40)
    assert calc.value == 0
