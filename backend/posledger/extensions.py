# Overview: Flask extension instances for the database and schema migrations.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
# SQLite is the default store; batch mode lets migrations alter its tables
migrate = Migrate(render_as_batch=True)
