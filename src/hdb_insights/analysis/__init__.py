"""Market statistics and value scoring."""

from hdb_insights.analysis.scoring import score_color, score_label, score_unit
from hdb_insights.analysis.statistics import StatisticsAggregator, median

__all__ = ["StatisticsAggregator", "median", "score_color", "score_label", "score_unit"]
