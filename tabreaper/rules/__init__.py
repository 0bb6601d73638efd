from .patterns import InvalidPattern, PatternSet, Rule

__all__ = ["InvalidPattern", "PatternSet", "Rule"]
