"""
Ontology Learning Module
========================

Level transitions, pattern mining, synthesis and the learning loop.
"""

from .learning_loop import LearningLoop, LearningLoopConfig, LoopResult, LoopStageEnum, LoopStatus
from .level_manager import (
    BatchDecayResult,
    BatchPromoteResult,
    DecayResult,
    LevelChangeResult,
    LevelManager,
    LevelManagerConfig,
    LevelStats,
    PromotionCandidate,
)
from .pattern_miner import DetectionResult, PatternCandidate, PatternMiner, PatternMinerConfig, PatternStatusResult
from .results import OperationResult
from .synthesizer import (
    AutoResolveResult,
    ConflictResolutionResult,
    SynthesisResult,
    Synthesizer,
    SynthesizerConfig,
)

__all__ = [
    "OperationResult",
    # Levels
    "LevelManager",
    "LevelManagerConfig",
    "PromotionCandidate",
    "LevelChangeResult",
    "DecayResult",
    "BatchPromoteResult",
    "BatchDecayResult",
    "LevelStats",
    # Patterns
    "PatternMiner",
    "PatternMinerConfig",
    "PatternCandidate",
    "DetectionResult",
    "PatternStatusResult",
    # Synthesis
    "Synthesizer",
    "SynthesizerConfig",
    "SynthesisResult",
    "ConflictResolutionResult",
    "AutoResolveResult",
    # Loop
    "LearningLoop",
    "LearningLoopConfig",
    "LoopResult",
    "LoopStatus",
    "LoopStageEnum",
]
