"""
saga_conductor – saga orchestration engine.

Import path convention::

    from saga_conductor.kernel.errors import DomainError
    from saga_conductor.application.saga import SagaOrchestrator, SagaState
    from saga_conductor.resilience.retry import RetryPolicy
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
