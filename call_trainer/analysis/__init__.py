"""Post-call transcript grading and result delivery."""

from call_trainer.analysis.schema import AnalysisResult

__all__ = ["AnalysisResult"]
