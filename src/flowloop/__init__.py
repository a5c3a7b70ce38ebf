"""flowloop: workflow state tracking and continuous-improvement analytics."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("flowloop")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from flowloop.core import FlowloopDB, Task
from flowloop.tracker import TransitionTracker
from flowloop.workflow import WorkflowConfigStore

__all__ = ["FlowloopDB", "Task", "TransitionTracker", "WorkflowConfigStore", "__version__"]
