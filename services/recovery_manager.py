"""
Recovery Manager - Runs recovery strategies for classified errors.

Each error category has an ordered chain of strategy names (primary first,
then fallbacks). Strategies are callables ``(error, context) -> result``,
sync or async. Returning normally means the recovery succeeded; raising means
the next strategy in the chain is tried.
"""
import asyncio
import inspect
import time
from collections import Counter, deque
from typing import Any, Callable, Dict, List, Optional

from config.logging_config import get_logger
from core.constants import DEFAULT_PIPELINE_CONFIG, RECOVERY_STRATEGIES
from core.exceptions import OperationCancelledError
from core.models import RecoveryAttempt, RecoveryStep
from utils.json_utils import fix_json_errors
from .retry import RetryPolicy

logger = get_logger(__name__)

Strategy = Callable[[dict, dict], Any]


class RecoveryNotApplicable(Exception):
    """Raised by a strategy that cannot act on the given context."""


class RecoveryManager:
    """Registry of recovery strategies with attempt history."""

    def __init__(
        self,
        history_size: int = 100,
        retry_policy: Optional[RetryPolicy] = None,
        memory_manager=None
    ):
        """
        Initialize recovery manager.

        Args:
            history_size: Number of recovery attempts kept for statistics
            retry_policy: Policy used by the ``retry_with_backoff`` strategy;
                fixed delay from the pipeline defaults when omitted
            memory_manager: MemoryManager used by the cleanup strategies
        """
        self.retry_policy = retry_policy or RetryPolicy.from_config(DEFAULT_PIPELINE_CONFIG)
        self.memory_manager = memory_manager
        self._history: deque = deque(maxlen=history_size)
        self._strategies: Dict[str, Strategy] = {}
        self._chains: Dict[str, List[str]] = {
            category: list(names) for category, names in RECOVERY_STRATEGIES.items()
        }
        self._register_defaults()

    # Registry

    def register_strategy(
        self,
        name: str,
        strategy: Strategy,
        category: Optional[str] = None,
        position: Optional[int] = None
    ) -> None:
        """
        Register (or replace) a strategy and optionally add it to a category chain.

        Args:
            name: Strategy name
            strategy: Callable ``(error, context)``
            category: Category whose chain should include the strategy
            position: Index in the chain; appended when omitted
        """
        self._strategies[name] = strategy
        if category is not None:
            chain = self._chains.setdefault(category, [])
            if name in chain:
                chain.remove(name)
            if position is None:
                chain.append(name)
            else:
                chain.insert(position, name)

    def set_fallback_chain(self, category: str, names: List[str]) -> None:
        unknown = [n for n in names if n not in self._strategies]
        if unknown:
            raise ValueError(f"Unknown recovery strategies: {unknown}")
        self._chains[category] = list(names)

    def get_fallback_chain(self, category: str) -> List[str]:
        return list(self._chains.get(category, []))

    def has_strategies(self, category: str) -> bool:
        return bool(self._chains.get(category))

    # Execution

    async def execute_recovery(
        self,
        category: str,
        error: dict,
        context: Optional[dict] = None
    ) -> RecoveryAttempt:
        """
        Walk the category's strategy chain until one succeeds.

        Args:
            category: Error category value
            error: Error record produced by the ErrorHandler
            context: Collaborators and data strategies may act on

        Returns:
            RecoveryAttempt recording every strategy tried
        """
        context = context or {}
        started = time.time()
        attempt = RecoveryAttempt(category=category, error=error.get('message', ''))

        for name in self._chains.get(category, []):
            strategy = self._strategies.get(name)
            if strategy is None:
                continue
            try:
                result = strategy(error, context)
                if inspect.isawaitable(result):
                    result = await result
            except RecoveryNotApplicable as e:
                attempt.attempts.append(RecoveryStep(name, False, time.time(), str(e)))
                continue
            except OperationCancelledError:
                raise
            except Exception as e:
                logger.warning("Recovery strategy %s failed: %s", name, e)
                attempt.attempts.append(RecoveryStep(name, False, time.time(), str(e)))
                continue

            attempt.attempts.append(RecoveryStep(name, True, time.time()))
            attempt.final_method = name
            attempt.result = result
            break

        attempt.duration = time.time() - started
        self._history.append(attempt)
        if attempt.success:
            logger.info("Recovered %s error via %s", category, attempt.final_method)
        return attempt

    # History

    def get_recovery_history(self, limit: Optional[int] = None) -> List[RecoveryAttempt]:
        history = list(self._history)
        return history[-limit:] if limit else history

    def get_recovery_statistics(self) -> Dict:
        history = list(self._history)
        total = len(history)
        successes = [a for a in history if a.success]
        by_category = Counter(a.category for a in history)
        by_method = Counter(a.final_method for a in successes)
        return {
            'total_recoveries': total,
            'successful_recoveries': len(successes),
            'success_rate': (len(successes) / total * 100) if total else 0.0,
            'average_recovery_time': (sum(a.duration for a in history) / total) if total else 0.0,
            'recoveries_by_category': dict(by_category),
            'recoveries_by_method': dict(by_method),
        }

    def clear_history(self) -> None:
        self._history.clear()

    # Default strategies

    def _register_defaults(self) -> None:
        self._strategies.update({
            'retry_with_backoff': self._retry_with_backoff,
            'use_cached_result': self._use_cached_result,
            'alternate_parser': self._alternate_parser,
            'fallback_chain': self._fallback_chain,
            'reduce_quality': self._reduce_quality,
            'auto_fix_json': self._auto_fix_json,
            'default_values': self._default_values,
            'light_cleanup': self._light_cleanup,
            'aggressive_cleanup': self._aggressive_cleanup,
        })

    async def _retry_with_backoff(self, error: dict, context: dict):
        operation = context.get('operation')
        if operation is None:
            raise RecoveryNotApplicable("No operation to retry")
        policy = context.get('retry_policy')
        if policy is None:
            policy = self.retry_policy
        if not policy.enabled:
            raise RecoveryNotApplicable("Retries are handled by the caller")
        token = context.get('cancellation_token')

        last_error: Optional[Exception] = None
        for attempt in range(1, policy.max_retries + 1):
            await _wait(policy.delay_for(attempt), token)
            try:
                return await operation()
            except OperationCancelledError:
                raise
            except Exception as e:
                last_error = e
                logger.debug("Retry %d/%d failed: %s", attempt, policy.max_retries, e)
        raise RecoveryNotApplicable(f"Retries exhausted: {last_error}")

    def _use_cached_result(self, error: dict, context: dict):
        cache = context.get('cache')
        key = context.get('cache_key')
        if cache is None or key is None or key not in cache:
            raise RecoveryNotApplicable("No cached result available")
        return cache[key]

    async def _run_alternatives(self, operations, label: str):
        if not operations:
            raise RecoveryNotApplicable(f"No {label} configured")
        last_error: Optional[Exception] = None
        for op in operations:
            try:
                result = op()
                if inspect.isawaitable(result):
                    result = await result
                return result
            except Exception as e:
                last_error = e
        raise RecoveryNotApplicable(f"All {label} failed: {last_error}")

    async def _alternate_parser(self, error: dict, context: dict):
        return await self._run_alternatives(context.get('alternate_parsers'), 'alternate parsers')

    async def _fallback_chain(self, error: dict, context: dict):
        return await self._run_alternatives(context.get('fallback_operations'), 'fallback operations')

    async def _reduce_quality(self, error: dict, context: dict):
        op = context.get('reduced_quality_operation')
        return await self._run_alternatives([op] if op else None, 'reduced quality operation')

    def _auto_fix_json(self, error: dict, context: dict):
        data = context.get('data')
        if not isinstance(data, str):
            raise RecoveryNotApplicable("No JSON text to repair")
        fixed = fix_json_errors(data)
        if fixed is None:
            raise RecoveryNotApplicable("JSON could not be repaired")
        return fixed

    def _default_values(self, error: dict, context: dict):
        if 'defaults' not in context:
            raise RecoveryNotApplicable("No default values supplied")
        return context['defaults']

    def _memory_manager(self, context: dict):
        manager = context.get('memory_manager') or self.memory_manager
        if manager is None:
            raise RecoveryNotApplicable("No memory manager available")
        return manager

    def _light_cleanup(self, error: dict, context: dict):
        manager = self._memory_manager(context)
        freed = manager.perform_light_cleanup()
        if manager.get_memory_level() in ('critical', 'emergency'):
            raise RecoveryNotApplicable("Memory still critical after light cleanup")
        return {'freed': freed}

    def _aggressive_cleanup(self, error: dict, context: dict):
        manager = self._memory_manager(context)
        return {'freed': manager.perform_aggressive_cleanup()}


async def _wait(seconds: float, token=None) -> None:
    if token is None:
        await asyncio.sleep(seconds)
    elif await token.wait(seconds):
        token.raise_if_cancelled()
