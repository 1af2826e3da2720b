"""
Image Batch - Engine Package

Leaf components of the batch pipeline. Each is an explicit state object
created and injected by the orchestrator; none keeps module-level state.

  - batch_engine.dispatch: DispatchQueue, DispatchQueues
  - batch_engine.retry: RetryExecutor, RetryPolicy
  - batch_engine.circuit_breaker: CircuitBreaker, BreakerRegistry
  - batch_engine.budget: BudgetLedger, BudgetLimits
  - batch_engine.ledger: ResultLedger
  - batch_engine.progress: ProgressReporter
  - batch_engine.resources: ResourceGuard
  - batch_engine.backends: Backend, BackendRegistry, HTTPBackend, SimulatedBackend
"""

from batch_engine.types import (
    WorkItem, ItemStatus, ErrorClass,
    ClassificationResult, Success, Failure, Skipped, Outcome, Session,
)
from batch_engine.errors import (
    ClassificationError, CircuitBreakerOpen, BatchCancelled,
    LedgerWriteError, BatchSetupError, classify_error,
)
from batch_engine.retry import RetryExecutor, RetryPolicy
from batch_engine.circuit_breaker import BreakerConfig, BreakerRegistry, CircuitBreaker, CircuitState
from batch_engine.dispatch import DispatchConfig, DispatchQueue, DispatchQueues
from batch_engine.budget import BudgetLedger, BudgetLimits, BackendPricing
from batch_engine.ledger import ResultLedger
from batch_engine.events import EventBus, EventType, PipelineEvent
from batch_engine.progress import ProgressReporter, ProgressStats
from batch_engine.resources import ResourceGuard, ResourceLimits
from batch_engine.backends import Backend, BackendRegistry, HTTPBackend, SimulatedBackend
