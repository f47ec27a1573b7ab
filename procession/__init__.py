"""Procession: business-process execution core."""

from .advisor import GuardedAdvisor, PydanticAIAdvisor, RuleBasedAdvisor, build_advisor
from .automation import ProcessAutomationEngine, ProcessExecution
from .broadcast import ProgressBroadcaster, QueueObserver
from .config import ProcessionConfig, load_config
from .contracts import WorkflowContext, WorkflowPattern, WorkflowStep
from .engine import ExecutionEngine
from .monitor import ProcessMonitor
from .notifications import get_sink
from .patterns import InMemoryPatternRepository, YamlPatternRepository
from .persistence import WorkflowExecution, get_store

__version__ = "0.1.0"
__all__ = [
    "ExecutionEngine",
    "ProcessAutomationEngine",
    "ProcessExecution",
    "ProcessMonitor",
    "ProgressBroadcaster",
    "QueueObserver",
    "GuardedAdvisor",
    "PydanticAIAdvisor",
    "RuleBasedAdvisor",
    "build_advisor",
    "ProcessionConfig",
    "load_config",
    "WorkflowContext",
    "WorkflowExecution",
    "WorkflowPattern",
    "WorkflowStep",
    "InMemoryPatternRepository",
    "YamlPatternRepository",
    "get_sink",
    "get_store",
]
