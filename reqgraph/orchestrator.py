"""Facade wiring traffic loading, the oracle, and the resolution pipeline."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional, Union

from .corpus import CorpusIndex
from .har import load_corpus
from .llm import LocalLLM
from .models import RunResult
from .oracle import LLMOracle, Oracle
from .pipeline import CancelToken, IterationHook, ResolutionPipeline

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class AnalysisOrchestrator:
    """Builds an oracle once and runs analyses against captured traffic."""

    def __init__(
        self,
        oracle: Optional[Oracle] = None,
        llm_model: Optional[str] = None,
        llm_provider: Optional[str] = None,
        llm_api_key: Optional[str] = None,
        llm_endpoint: Optional[str] = None,
    ):
        if oracle is None:
            oracle = LLMOracle(
                LocalLLM(model=llm_model, provider=llm_provider, api_key=llm_api_key, endpoint=llm_endpoint)
            )
        self.oracle = oracle

    def load(self, har_path: PathLike, cookie_path: Optional[PathLike] = None) -> CorpusIndex:
        return load_corpus(har_path, cookie_path)

    def analyze(
        self,
        corpus: Union[CorpusIndex, PathLike],
        goal: str,
        cookie_path: Optional[PathLike] = None,
        input_variables: Optional[Mapping[str, str]] = None,
        max_steps: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
        on_iteration: Optional[IterationHook] = None,
    ) -> RunResult:
        """Resolve ``goal`` against a loaded corpus or a HAR file path."""
        if not isinstance(corpus, CorpusIndex):
            corpus = self.load(corpus, cookie_path)
        pipeline = ResolutionPipeline(corpus, self.oracle, max_steps=max_steps, on_iteration=on_iteration)
        result = pipeline.run(goal, input_variables=input_variables, cancel=cancel)
        logger.info(
            "Analysis %s: %d nodes, %d steps", result.status_text, len(result.graph), result.steps_used,
        )
        return result
