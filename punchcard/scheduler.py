"""
Background scheduler for the card engine.

One StudioScheduler per application, created by the app factory and kept
in app.extensions['studio_scheduler']. start() launches a single daemon
thread (calling it again is a no-op); run_now() executes a job on demand
for the CLI and the admin API.
"""
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from flask import current_app

from punchcard.errors import ValidationError
from punchcard.utils.timezone import studio_now

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'studio_scheduler'
POLL_SECONDS = 30


@dataclass
class ScheduledTask:
    """A periodic job."""
    name: str
    func: Callable[[], Any]
    schedule_type: str  # 'daily' or 'interval'
    time: str = ''  # HH:MM studio time for daily tasks
    interval: int = 0  # minutes for interval tasks
    description: str = ''
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    last_result: Any = None
    last_error: Optional[str] = None

    def schedule_next(self, now):
        """Set next_run strictly after `now`."""
        if self.schedule_type == 'daily':
            hour, minute = map(int, self.time.split(':'))
            tz = now.tzinfo
            local = now.replace(tzinfo=None)
            run_at = local.replace(hour=hour, minute=minute, second=0, microsecond=0)
            if run_at <= local:
                run_at += timedelta(days=1)
            if tz is None:
                self.next_run = run_at
            elif hasattr(tz, 'localize'):
                self.next_run = tz.localize(run_at)
            else:
                self.next_run = run_at.replace(tzinfo=tz)
        else:
            self.next_run = now + timedelta(minutes=self.interval)

    def is_due(self, now):
        return self.next_run is not None and now >= self.next_run


# ── Jobs ────────────────────────────────────────────────────

def _daily_sweep():
    from punchcard.services.alerts import AlertSweep
    return AlertSweep().run_daily().to_dict()


def _midnight_cleanup():
    from punchcard.services.alerts import AlertSweep
    return AlertSweep().run_midnight_cleanup().to_dict()


def _balance_check():
    from punchcard.services.alerts import AlertSweep
    return AlertSweep().run_balance_check().to_dict()


def _dispatch_notifications():
    from punchcard.utils.email import dispatch_pending
    return dispatch_pending()


class StudioScheduler:
    """Owns the periodic jobs and the thread that runs them."""

    def __init__(self, app):
        self.app = app
        self.tasks: Dict[str, ScheduledTask] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._setup_tasks(app.config)

    def _setup_tasks(self, config):
        balance_hours = config.get('SCHEDULER_BALANCE_INTERVAL_HOURS', 6)
        dispatch_minutes = config.get('SCHEDULER_DISPATCH_INTERVAL_MINUTES', 5)
        for task in (
            ScheduledTask(
                name='daily_sweep',
                func=_daily_sweep,
                schedule_type='daily',
                time=config.get('SCHEDULER_DAILY_AT', '08:00'),
                description='Expire cards, expiration reminders, low balance, birthdays',
            ),
            ScheduledTask(
                name='midnight_cleanup',
                func=_midnight_cleanup,
                schedule_type='daily',
                time='00:00',
                description='Expire cards and remove unused birthday passes',
            ),
            ScheduledTask(
                name='balance_check',
                func=_balance_check,
                schedule_type='interval',
                interval=balance_hours * 60,
                description='Low balance alerts',
            ),
            ScheduledTask(
                name='dispatch_notifications',
                func=_dispatch_notifications,
                schedule_type='interval',
                interval=dispatch_minutes,
                description='Deliver pending notification outbox rows',
            ),
        ):
            self.tasks[task.name] = task

    # ── Lifecycle ───────────────────────────────────────────

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the scheduler thread once. Returns False if already running."""
        with self._lock:
            if self.running:
                return False
            now = self._now()
            for task in self.tasks.values():
                task.schedule_next(now)
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._run_loop, name='studio-scheduler', daemon=True,
            )
            self._thread.start()
        logger.info('Studio scheduler started with %d task(s)', len(self.tasks))
        return True

    def stop(self, timeout=5):
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info('Studio scheduler stopped')

    def wait(self, timeout):
        """Block until stop() is called or `timeout` seconds pass."""
        return self._stop.wait(timeout)

    def _run_loop(self):
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(POLL_SECONDS)

    def _now(self):
        with self.app.app_context():
            return studio_now()

    # ── Execution ───────────────────────────────────────────

    def tick(self, now=None):
        """Run every task that is due. Returns the names of tasks run."""
        now = now or self._now()
        ran = []
        for task in self.tasks.values():
            if task.is_due(now):
                self._execute(task)
                task.schedule_next(now)
                ran.append(task.name)
        return ran

    def run_now(self, name):
        """
        Run a job immediately (manual trigger).

        Raises:
            ValidationError: unknown job name
        """
        task = self.tasks.get(name)
        if task is None:
            raise ValidationError(
                f"Unknown job '{name}'",
                details={'jobs': sorted(self.tasks)},
            )
        logger.info('Manual run of %s', name)
        return self._execute(task, raise_errors=True)

    def _execute(self, task, raise_errors=False):
        with self.app.app_context():
            try:
                result = task.func()
            except Exception as e:
                from punchcard.extensions import db
                db.session.rollback()
                task.last_error = str(e)
                logger.exception('Scheduled task %s failed', task.name)
                if raise_errors:
                    raise
                return None
            finally:
                task.last_run = datetime.utcnow()
        task.last_result = result
        task.last_error = None
        return result

    def get_status(self):
        return {
            'running': self.running,
            'tasks': [
                {
                    'name': task.name,
                    'description': task.description,
                    'schedule': task.time if task.schedule_type == 'daily' else f'every {task.interval} minutes',
                    'last_run': task.last_run.isoformat() if task.last_run else None,
                    'next_run': task.next_run.isoformat() if task.next_run else None,
                    'last_error': task.last_error,
                }
                for task in self.tasks.values()
            ],
        }


def init_scheduler(app):
    """Create the app's scheduler and start it when enabled."""
    scheduler = StudioScheduler(app)
    app.extensions[EXTENSION_KEY] = scheduler

    if not app.config.get('SCHEDULER_ENABLED') or app.testing:
        return scheduler
    # The dev reloader imports the app twice; only the child process runs jobs
    if app.debug and os.environ.get('WERKZEUG_RUN_MAIN') != 'true':
        return scheduler
    scheduler.start()
    return scheduler


def get_scheduler(app=None):
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
