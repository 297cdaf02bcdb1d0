from lpguard.valuation.valuator import PositionValuator, classify_range

__all__ = ["PositionValuator", "classify_range"]
