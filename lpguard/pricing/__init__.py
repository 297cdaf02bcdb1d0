from lpguard.pricing.oracle import PriceOracle

__all__ = ["PriceOracle"]
