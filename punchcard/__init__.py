"""
Studio punch-card engine application factory.
Creates and configures the Flask application instance.
"""
import os
import json
import logging
import uuid
from datetime import datetime, timezone

import click
from flask import Flask, jsonify, request, g
from sqlalchemy.exc import OperationalError

from punchcard.config import config
from punchcard.errors import CardEngineError, DependencyError, ValidationError
from punchcard.extensions import init_extensions, db


def _init_sentry(app):
    """Initialize Sentry error tracking for production."""
    dsn = app.config.get('SENTRY_DSN') or os.environ.get('SENTRY_DSN')
    if not dsn:
        app.logger.info('SENTRY_DSN not set, error tracking disabled.')
        return

    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration(), SqlalchemyIntegration()],
            traces_sample_rate=float(os.environ.get('SENTRY_TRACES_RATE', '0.1')),
            environment=os.environ.get('FLASK_ENV', 'production'),
            send_default_pii=False,
        )
        app.logger.info('Sentry error tracking initialized.')
    except ImportError:
        app.logger.warning('sentry-sdk not installed, error tracking disabled.')


def create_app(config_name=None):
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration to use (development, testing, production)
            or a configuration class

    Returns:
        Configured Flask application instance
    """
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'development')

    app = Flask(__name__)

    # Load configuration
    config_class = config[config_name] if isinstance(config_name, str) else config_name
    app.config.from_object(config_class)

    # Initialize Sentry (production only)
    if config_name == 'production':
        _init_sentry(app)

    # Call init_app if available (production validation happens here)
    if hasattr(config_class, 'init_app'):
        config_class.init_app(app)

    # Initialize extensions
    init_extensions(app)

    register_blueprints(app)
    register_error_handlers(app)
    register_cli_commands(app)
    configure_logging(app)

    # Create database tables (development only)
    if config_name == 'development':
        with app.app_context():
            db.create_all()

    # Background jobs (disabled unless SCHEDULER_ENABLED)
    from punchcard.scheduler import init_scheduler
    init_scheduler(app)

    return app


def register_blueprints(app):
    """Register all application blueprints."""
    # REST API v1 - JWT auth
    from punchcard.blueprints.api import api_bp

    app.register_blueprint(api_bp, url_prefix='/api/v1')


def register_error_handlers(app):
    """Register error handlers. Every response is a JSON error envelope."""

    @app.errorhandler(CardEngineError)
    def engine_error(error):
        return jsonify({'error': error.to_dict()}), error.status

    @app.errorhandler(OperationalError)
    def database_unavailable(error):
        db.session.rollback()
        app.logger.error('Database unavailable: %s (request_id=%s)', error.orig, g.get('request_id', '-'))
        failure = DependencyError(details={'service': 'database'})
        return jsonify({'error': failure.to_dict()}), failure.status

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({'error': {'code': 'bad_request', 'message': 'Malformed request.'}}), 400

    @app.errorhandler(403)
    def forbidden(error):
        return jsonify({'error': {'code': 'forbidden', 'message': 'Access denied.'}}), 403

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': {'code': 'not_found', 'message': 'Resource not found.'}}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'error': {'code': 'method_not_allowed', 'message': 'Method not allowed.'}}), 405

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        request_id = g.get('request_id', '-')
        app.logger.error('500 Internal Server Error: %s (request_id=%s)', type(error).__name__, request_id, exc_info=True)
        return jsonify({'error': {'code': 'internal_error', 'message': 'Internal server error.', 'request_id': request_id}}), 500


def _print_report(title, report):
    print("=" * 50)
    print(title)
    print("=" * 50)
    if report.dry_run:
        print("[DRY RUN] Nothing was written")
    print(f"Cards expired: {report.expired}")
    print(f"Expiration reminders: {report.expiring_soon}")
    print(f"Low balance alerts: {report.low_balance}")
    print(f"Birthdays: {report.birthdays} ({report.passes_created} pass(es) issued)")
    print(f"Unused birthday passes removed: {report.passes_purged}")
    print(f"Errors: {len(report.errors)}")
    for error in report.errors:
        print(f"  [ERROR] {error['step']} {error['item']}: {error['error']}")


def register_cli_commands(app):
    """Register custom CLI commands."""

    @app.cli.command('init-db')
    def init_db():
        """Create tables and seed the default card catalog."""
        from punchcard.services.catalog import seed_card_types

        db.create_all()
        created = seed_card_types()
        for name in created:
            print(f"Created card type: {name}")
        print(f"Database initialized ({len(created)} new card type(s)).")

    @app.cli.command('seed-card-types')
    def seed_card_types_cmd():
        """Seed the default card catalog (existing names are left alone)."""
        from punchcard.services.catalog import seed_card_types

        created = seed_card_types()
        if not created:
            print("Card types already seeded.")
            return
        for name in created:
            print(f"Created card type: {name}")
        print(f"Done! {len(created)} card type(s) added.")

    @app.cli.command('assign-codes')
    def assign_codes_cmd():
        """Give customers and dependents missing a QR or check-in code one."""
        from punchcard.models.user import Dependent, User, UserRole
        from punchcard.utils.codes import assign_codes

        missing = User.qr_code.is_(None) | User.check_in_code.is_(None)
        holders = User.query.filter(User.role == UserRole.CUSTOMER, missing).order_by(User.id).all()
        holders += Dependent.query.filter(
            Dependent.qr_code.is_(None) | Dependent.check_in_code.is_(None)
        ).order_by(Dependent.id).all()

        for record in holders:
            assign_codes(record)
            db.session.flush()
        db.session.commit()
        print(f"Assigned codes to {len(holders)} holder(s).")

    @app.cli.command('expire-cards')
    def expire_cards():
        """Mark every active card past its expiration date as expired."""
        from punchcard.services.ledger import CardLedger

        count = CardLedger.sweep_expire_overdue()
        print(f"Expired {count} card(s).")

    @app.cli.command('run-daily-sweep')
    @click.option('--dry-run', is_flag=True, help='Count what would happen without writing anything')
    def run_daily_sweep(dry_run):
        """Expire cards, queue reminders and low balance alerts, issue birthday passes."""
        from punchcard.services.alerts import AlertSweep

        report = AlertSweep().run_daily(dry_run=dry_run)
        _print_report("DAILY SWEEP", report)

    @app.cli.command('run-balance-check')
    def run_balance_check():
        """Queue low balance alerts for active punch cards."""
        from punchcard.services.alerts import AlertSweep

        report = AlertSweep().run_balance_check()
        print(f"Low balance alerts queued: {report.low_balance}")
        if report.errors:
            print(f"Errors: {len(report.errors)}")

    @app.cli.command('dispatch-notifications')
    @click.option('--limit', type=int, default=None, help='Maximum rows to deliver')
    def dispatch_notifications(limit):
        """Deliver pending notification outbox rows by email."""
        from punchcard.utils.email import dispatch_pending

        stats = dispatch_pending(limit=limit)
        print(f"Sent: {stats['sent']}, failed: {stats['failed']}")

    @app.cli.command('run-scheduler')
    @click.option('--list-jobs', is_flag=True, help='List scheduled jobs and exit')
    @click.option('--job', default=None, help='Run one job now and exit')
    def run_scheduler(list_jobs, job):
        """Run the background scheduler in the foreground."""
        from punchcard.scheduler import get_scheduler

        scheduler = get_scheduler(app)

        if list_jobs:
            for task in scheduler.get_status()['tasks']:
                print(f"{task['name']}: {task['schedule']} - {task['description']}")
            return

        if job:
            try:
                result = scheduler.run_now(job)
            except ValidationError as e:
                raise click.BadParameter(e.message, param_hint='--job')
            print(f"{job}: {result}")
            return

        scheduler.start()
        print("Scheduler running. Press Ctrl+C to stop.")
        try:
            while scheduler.running:
                scheduler.wait(60)
        except KeyboardInterrupt:
            print("Shutdown requested")
        finally:
            scheduler.stop()


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production (cloud log aggregation)."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'message': record.getMessage(),
            'module': record.module,
            'line': record.lineno,
        }
        # Add request_id if available
        try:
            log_entry['request_id'] = g.get('request_id', '-')
        except RuntimeError:
            pass  # Outside request context
        if record.exc_info and record.exc_info[0]:
            log_entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


def configure_logging(app):
    """Configure application logging.

    Production: JSON to stdout.
    Development: plain text.
    """
    if app.testing:
        return

    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get('X-Request-ID', str(uuid.uuid4())[:8])

    @app.after_request
    def log_request(response):
        app.logger.info('%s %s %s', request.method, request.path, response.status_code)
        return response

    if not app.debug:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(JSONFormatter())
        stream_handler.setLevel(logging.INFO)

        # Clear existing handlers to avoid duplicates
        app.logger.handlers.clear()
        app.logger.addHandler(stream_handler)
        app.logger.setLevel(logging.INFO)
        app.logger.info('%s card engine startup (JSON logging)', app.config['STUDIO_NAME'])
    else:
        app.logger.setLevel(logging.DEBUG)
        app.logger.info('%s card engine startup (development)', app.config['STUDIO_NAME'])
