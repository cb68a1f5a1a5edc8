"""
Worker（异步 job 消费）。
"""

from __future__ import annotations

from assistant_gateway.worker.budget import BudgetedCall, BudgetedGeneration, BudgetedSearch
from assistant_gateway.worker.processor import JobProcessor
from assistant_gateway.worker.runner import Worker, run_worker_once

__all__ = [
    "BudgetedCall",
    "BudgetedGeneration",
    "BudgetedSearch",
    "JobProcessor",
    "Worker",
    "run_worker_once",
]
