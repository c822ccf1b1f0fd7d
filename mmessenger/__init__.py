from datetime import datetime, timezone
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_socketio import SocketIO
from dotenv import load_dotenv
import os

# Unbound extension; models declare against it and create_app() binds it
db = SQLAlchemy()


def _env_flag(name, default):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _configure(app):
    # Browser settings
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY') or 'SECRET_KEY'
    app.config['SESSION_COOKIE_NAME'] = os.environ.get('SESSION_COOKIE_NAME') or 'sess_mmessenger'

    # Configure Flask Port, default to 8306
    app.config['FLASK_PORT'] = int(os.environ.get('FLASK_PORT') or 8306)

    # Allow emojis, non-ASCII characters in JSON responses
    app.config['JSON_AS_ASCII'] = False

    # Database settings
    dbName = 'mmessenger'
    DB_ENDPOINT = os.environ.get('DB_ENDPOINT') or None
    DB_USERNAME = os.environ.get('DB_USERNAME') or None
    DB_PASSWORD = os.environ.get('DB_PASSWORD') or None
    if DB_ENDPOINT and DB_USERNAME and DB_PASSWORD:
        # Production - Use MySQL
        DB_PORT = '3306'
        dbString = f'mysql+pymysql://{DB_USERNAME}:{DB_PASSWORD}@{DB_ENDPOINT}:{DB_PORT}'
        dbURI = dbString + '/' + dbName
    else:
        # Development - Use SQLite, relative to the instance folder
        dbString = 'sqlite:///volumes/'
        dbURI = dbString + dbName + '.db'
    app.config['SQLALCHEMY_DATABASE_NAME'] = dbName
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL') or dbURI
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    # Upload settings
    app.config['MAX_CONTENT_LENGTH'] = 20 * 1024 * 1024  # maximum size of a request body
    app.config['UPLOAD_FOLDER'] = os.environ.get('UPLOAD_FOLDER') or os.path.join(app.instance_path, 'uploads')
    app.config['MESSENGER_MAX_UPLOAD_BYTES'] = int(os.environ.get('MESSENGER_MAX_UPLOAD_BYTES') or 10 * 1024 * 1024)

    # Messenger behaviour
    app.config['MESSENGER_MESSAGE_HISTORY_LIMIT'] = int(os.environ.get('MESSENGER_MESSAGE_HISTORY_LIMIT') or 1000)
    app.config['MESSENGER_MESSAGE_DISPLAY_LIMIT'] = int(os.environ.get('MESSENGER_MESSAGE_DISPLAY_LIMIT') or 100)
    app.config['MESSENGER_SEARCH_MIN_LENGTH'] = int(os.environ.get('MESSENGER_SEARCH_MIN_LENGTH') or 2)
    app.config['MESSENGER_AUTOSAVE_SECONDS'] = float(os.environ.get('MESSENGER_AUTOSAVE_SECONDS') or 30)
    app.config['MESSENGER_TYPING_IDLE_SECONDS'] = float(os.environ.get('MESSENGER_TYPING_IDLE_SECONDS') or 1)
    app.config['MESSENGER_SIMULATE_TYPING'] = _env_flag('MESSENGER_SIMULATE_TYPING', True)
    app.config['MESSENGER_NOTIFY_ON_REJECT'] = _env_flag('MESSENGER_NOTIFY_ON_REJECT', False)
    app.config['MESSENGER_STORAGE_QUOTA_BYTES'] = int(os.environ.get('MESSENGER_STORAGE_QUOTA_BYTES') or 5 * 1024 * 1024)

    # Socket and CORS settings
    origins = os.environ.get('CORS_ORIGINS')
    app.config['CORS_ORIGINS'] = [o.strip() for o in origins.split(',')] if origins else [
        'http://localhost:4500',
        'http://127.0.0.1:4500',
        'http://localhost:8306',
    ]
    app.config['SOCKETIO_ASYNC_MODE'] = os.environ.get('SOCKETIO_ASYNC_MODE') or 'threading'


def create_app(test_config=None, scheduler=None, typing_provider_factory=None):
    """Build the messenger application and wire its collaborators.

    Storage adapter, controller registry and Socket.IO server are created
    here and handed to the event and API layers explicitly; nothing else
    in the package holds application state at module level.
    """
    # Load environment variables from .env file
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)
    _configure(app)
    if test_config:
        app.config.update(test_config)

    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite:///volumes/'):
        os.makedirs(os.path.join(app.instance_path, 'volumes'), exist_ok=True)
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    db.init_app(app)
    Migrate(app, db)
    CORS(
        app,
        supports_credentials=True,
        origins=app.config['CORS_ORIGINS'],
        allow_headers=['Content-Type', 'Authorization', 'X-Origin'],
        methods=['GET', 'POST', 'PUT', 'DELETE', 'OPTIONS'],
    )

    socketio = SocketIO(
        app,
        cors_allowed_origins=app.config['CORS_ORIGINS'],
        async_mode=app.config['SOCKETIO_ASYNC_MODE'],
        logger=False,
        engineio_logger=False,
        ping_timeout=60,
        ping_interval=25,
        # inline file messages travel over the socket
        max_http_buffer_size=app.config['MESSENGER_MAX_UPLOAD_BYTES'] * 2,
    )

    from mmessenger.model.storage import StorageAdapter
    from mmessenger.socketio_handlers.messenger_events import (
        ControllerRegistry,
        SocketIOScheduler,
        init_messenger_socket,
    )
    from mmessenger.api.messenger import messenger_api
    from mmessenger.cli import messenger_cli

    with app.app_context():
        db.create_all()

    storage = StorageAdapter(db, quota_bytes=app.config['MESSENGER_STORAGE_QUOTA_BYTES'])
    registry = ControllerRegistry(
        storage=storage,
        scheduler=scheduler or SocketIOScheduler(socketio, app),
        config=app.config,
        typing_provider_factory=typing_provider_factory,
    )
    app.extensions['mmessenger'] = {
        'storage': storage,
        'registry': registry,
        'socketio': socketio,
    }

    app.register_blueprint(messenger_api)
    _register_core_routes(app)
    init_messenger_socket(socketio, registry)
    app.cli.add_command(messenger_cli)

    return app


def _register_core_routes(app):
    @app.route('/api/health', methods=['GET'])
    def health_check():
        """API health check endpoint"""
        return jsonify({
            "status": "ok",
            "message": "Messenger is running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }), 200

    @app.errorhandler(404)
    def page_not_found(e):
        if request.path.startswith('/api/'):
            return jsonify({'error': 'API endpoint not found'}), 404
        return e

    @app.errorhandler(500)
    def internal_error(e):
        if request.path.startswith('/api/'):
            return jsonify({'error': 'Internal server error'}), 500
        return e
