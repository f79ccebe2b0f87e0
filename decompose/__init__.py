"""
Collaborative Task Decomposition

This package maintains project/task/step hierarchies, refines each step
through a producer/reviewer protocol, promotes over-complex steps into
sub-tasks and escalates unresolved disagreement to a human.
"""

__version__ = "0.1.0"

# Collaboration
from decompose.collaboration import ReviewerDecision

# Complexity
from decompose.complexity import (
    Agent,
    ComplexityAssessment,
    ComplexityLevel,
    ReconciledComplexity,
    ReconciliationPolicy,
)

# Configuration
from decompose.config import Settings

# Errors
from decompose.errors import (
    ChainCycleError,
    ConflictError,
    EngineError,
    InvalidTransition,
    IterationLimitExceeded,
    NotFoundError,
    StructuralViolation,
    UpstreamUnavailable,
    ValidationError,
)

# Generation backends
from decompose.generation import (
    CircuitBreakerBackend,
    GenerationBackend,
    HeuristicBackend,
    HttpBackend,
)

# Core models
from decompose.models import (
    AuditLog,
    Dispute,
    DisputeStatus,
    Project,
    ResolutionKind,
    Step,
    StepStatus,
    Task,
)

# Navigation
from decompose.navigation import ChainDirection, ChainWalk, WorkItem
from decompose.promotion import OptimizationResult, PromotionRecord
from decompose.refs import NodeKind, NodeRef

# Service facade
from decompose.service import DecompositionService

__all__ = [
    "__version__",
    "Agent",
    "AuditLog",
    "ChainCycleError",
    "ChainDirection",
    "ChainWalk",
    "CircuitBreakerBackend",
    "ComplexityAssessment",
    "ComplexityLevel",
    "ConflictError",
    "DecompositionService",
    "Dispute",
    "DisputeStatus",
    "EngineError",
    "GenerationBackend",
    "HeuristicBackend",
    "HttpBackend",
    "InvalidTransition",
    "IterationLimitExceeded",
    "NodeKind",
    "NodeRef",
    "NotFoundError",
    "OptimizationResult",
    "Project",
    "PromotionRecord",
    "ReconciledComplexity",
    "ReconciliationPolicy",
    "ResolutionKind",
    "ReviewerDecision",
    "Settings",
    "Step",
    "StepStatus",
    "StructuralViolation",
    "Task",
    "UpstreamUnavailable",
    "ValidationError",
    "WorkItem",
]
