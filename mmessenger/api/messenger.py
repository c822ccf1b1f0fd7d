"""REST endpoints for messenger bootstrap, user lookup and file uploads."""

from __future__ import annotations

import logging
import os
import uuid

from flask import Blueprint, current_app, jsonify, request, send_from_directory
from flask_restful import Api, Resource
from werkzeug.utils import secure_filename

from mmessenger.model.profile import repair_profile
from mmessenger.model.storage import StorageError
from mmessenger.socketio_handlers.controller import message_type_for
from mmessenger.socketio_handlers.messenger_core import ConversationStore


messenger_api = Blueprint("messenger_api", __name__, url_prefix="/api/messenger")
api = Api(messenger_api)

UPLOAD_SUBDIR = "messenger"

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _storage():
    return current_app.extensions["mmessenger"]["storage"]


def _upload_dir() -> str:
    return os.path.join(current_app.config["UPLOAD_FOLDER"], UPLOAD_SUBDIR)


@messenger_api.route("/bootstrap", methods=["GET"])
def messenger_bootstrap():
    storage = _storage()
    try:
        key = (request.args.get("key") or "").strip() or storage.get_active_key()
        raw = storage.load(key) if key else None
        pending = storage.pending_events(key) if raw is not None else []
    except StorageError as e:
        logger.error(f"Error loading bootstrap data: {str(e)}")
        return jsonify({"error": "Storage unavailable"}), 500

    if raw is None:
        return jsonify({"error": "Profile not found"}), 404

    return jsonify(
        {
            "key": key,
            "profile": repair_profile(raw, current_app.config["MESSENGER_MESSAGE_HISTORY_LIMIT"]),
            "pending_events": pending,
        }
    ), 200


class ProfilesAPI:
    class _Search(Resource):
        def get(self):
            term = (request.args.get("q") or "").strip()
            exclude = request.args.get("exclude") or None
            min_length = current_app.config["MESSENGER_SEARCH_MIN_LENGTH"]
            if len(term) < min_length:
                return {"error": f"Query must be at least {min_length} characters"}, 400
            try:
                results = ConversationStore(_storage()).search_users(term, exclude)
            except StorageError as e:
                logger.error(f"Error searching profiles: {str(e)}")
                return {"error": "Storage unavailable"}, 500
            return {"query": term, "results": results}, 200

    class _ReadKey(Resource):
        def get(self, key):
            try:
                raw = _storage().load(key)
            except StorageError as e:
                logger.error(f"Error loading profile {key}: {str(e)}")
                return {"error": "Storage unavailable"}, 500
            if raw is None:
                return {"error": "Profile not found"}, 404
            profile = repair_profile(raw)
            return {
                "key": key,
                "username": profile["username"],
                "chat_count": len(profile["chats"]),
                "friend_count": len(profile["friends"]),
                "request_count": len(profile["friendRequests"]),
            }, 200

    api.add_resource(_Search, "/profiles", "/profiles/")
    api.add_resource(_ReadKey, "/profiles/<string:key>", "/profiles/<string:key>/")


@messenger_api.route("/upload", methods=["POST"])
def messenger_upload():
    file_storage = request.files.get("file")
    if file_storage is None or not file_storage.filename:
        return jsonify({"error": "Missing file"}), 400

    original_name = secure_filename(file_storage.filename)
    if not original_name:
        return jsonify({"error": "Invalid file name"}), 400

    file_storage.stream.seek(0, os.SEEK_END)
    size = file_storage.stream.tell()
    file_storage.stream.seek(0)
    limit = current_app.config["MESSENGER_MAX_UPLOAD_BYTES"]
    if size > limit:
        return jsonify({"error": f"File exceeds {limit} byte limit"}), 400

    upload_dir = _upload_dir()
    os.makedirs(upload_dir, exist_ok=True)
    extension = os.path.splitext(original_name)[1].lower()
    filename = f"{uuid.uuid4().hex}{extension}"
    file_storage.save(os.path.join(upload_dir, filename))

    mimetype = (file_storage.mimetype or "application/octet-stream").lower()
    return jsonify(
        {
            "url": f"{messenger_api.url_prefix}/uploads/{filename}",
            "file_name": original_name,
            "mimetype": mimetype,
            "type": message_type_for(mimetype),
        }
    ), 201


@messenger_api.route("/uploads/<path:filename>", methods=["GET"])
def messenger_uploaded_file(filename):
    return send_from_directory(_upload_dir(), filename)
