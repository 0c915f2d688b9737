import logging
from typing import List

from exceptions import NotFound, ServiceError, ValidationError
from extensions import db
from ledger import LedgerStore
from models import AvailableTask, BalanceSource, TASK_SOURCES, Task, utcnow
from utils import balance_locks


logger = logging.getLogger(__name__)


DEFAULT_AVAILABLE_TASKS = [
    {"type": "ad", "description": "Watch promotional ad for health product", "duration": "30 seconds", "reward": 10},
    {"type": "ad", "description": "Watch tech gadget advertisement", "duration": "45 seconds", "reward": 10},
    {"type": "tiktok", "description": "Watch trending TikTok video", "duration": "15 seconds", "reward": 5},
    {"type": "tiktok", "description": "Watch dance challenge TikTok", "duration": "20 seconds", "reward": 5},
    {"type": "youtube", "description": "Watch YouTube tutorial video", "duration": "1 minute", "reward": 15},
    {"type": "youtube", "description": "Watch product review on YouTube", "duration": "1 minute", "reward": 15},
    {"type": "instagram", "description": "Watch Instagram fashion reel", "duration": "30 seconds", "reward": 7},
    {"type": "instagram", "description": "Watch travel reel on Instagram", "duration": "30 seconds", "reward": 7},
]


def seed_available_tasks() -> int:
    """Insert the default task catalogue if it is empty. Returns the number of rows added."""
    if AvailableTask.query.first() is not None:
        logger.info("Available tasks already seeded.")
        return 0
    for data in DEFAULT_AVAILABLE_TASKS:
        db.session.add(AvailableTask(**data))
    db.session.commit()
    logger.info(f"Seeded {len(DEFAULT_AVAILABLE_TASKS)} available tasks.")
    return len(DEFAULT_AVAILABLE_TASKS)


def _task_source(task_type: str) -> BalanceSource:
    source = BalanceSource.parse(task_type)
    if source not in TASK_SOURCES:
        raise ValidationError(f"Invalid task type: {task_type}")
    return source


def start_task(user_id: int, available_task_id: int) -> Task:
    available = db.session.get(AvailableTask, available_task_id)
    if available is None:
        raise NotFound("Task not found")
    _task_source(available.type)

    task = Task(
        user_id=user_id,
        available_task_id=available.id,
        type=available.type,
        amount=available.reward,
        description=available.description,
        duration=available.duration,
    )
    db.session.add(task)
    db.session.commit()
    return task


def complete_task(user_id: int, task_id: int) -> Task:
    """Mark a task completed and credit its reward to the matching task balance."""
    with balance_locks.hold(user_id):
        try:
            task = (Task.query.filter_by(id=task_id, user_id=user_id)
                    .with_for_update().populate_existing().first())
            if task is None:
                raise NotFound("Task not found")
            if task.completed:
                raise ValidationError("Task already completed")
            source = _task_source(task.type)

            user = LedgerStore.get_user(user_id, for_update=True)
            task.completed = True
            task.completed_at = utcnow()
            LedgerStore.create_earning(user_id, source, task.amount, f"Task completion: {task.type}")
            LedgerStore.adjust_balance(user, source, task.amount)
            db.session.commit()
        except ServiceError:
            db.session.rollback()
            raise

    logger.info(f"User {user_id} completed task {task_id} (+{task.amount} {task.type})")
    return task


def user_tasks(user_id: int) -> List[Task]:
    return LedgerStore.tasks_by_user(user_id)
