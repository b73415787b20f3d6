from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
socketio = SocketIO(async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    flask_app.logger.setLevel(flask_app.config.get('LOG_LEVEL', 'INFO'))

    allowed_origins = flask_app.config.get('CORS_ORIGINS') or []

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # App-owned coordination state: per-room locks and the push channel
    from typerace.services.race.locking import RoomLockRegistry
    from typerace.services.race.sync import ClientSyncChannel
    flask_app.extensions['room_locks'] = RoomLockRegistry()
    flask_app.extensions['sync_channel'] = ClientSyncChannel(socketio)

    # Import and register blueprints here
    from typerace.main import main
    flask_app.register_blueprint(main)

    from typerace.api.rooms import rooms
    flask_app.register_blueprint(rooms, url_prefix='/api/rooms')

    from typerace.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    # Flask-Login user loader
    from typerace.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            # Seed users
            users = ['testuser1', 'testuser2', 'testuser3']
            for u in users:
                user = User(username=u)
                user.set_password('password')
                db.session.add(user)

            db.session.commit()
            click.echo('Database has been reset and seeded!')

    @click.command('sweep-rooms')
    def sweep_rooms_command():
        """Deletes rooms past their expiry along with their participants."""
        from typerace.services.race.coordinator import sweep_expired_rooms
        with flask_app.app_context():
            swept = sweep_expired_rooms()
            click.echo(f'Swept {swept} expired room(s).')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(sweep_rooms_command)

    return flask_app
