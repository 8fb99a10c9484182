"""
Flask extensions initialization.
Extensions are initialized here and bound to the app in the factory.
"""
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_mailman import Mail

# Database
db = SQLAlchemy()

# Database migrations
migrate = Migrate()

# Email (outbox delivery)
mail = Mail()


def init_extensions(app):
    """Initialize all extensions with the Flask app."""
    db.init_app(app)
    migrate.init_app(app, db)
    mail.init_app(app)

    # Models must be imported before create_all / migrations see the metadata
    from punchcard import models  # noqa: F401
