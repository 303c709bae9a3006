from flask import jsonify
from flask_jwt_extended import get_jwt_identity


def current_user_id():
    # Tokens come from the auth provider; ``sub`` is its user id
    return str(get_jwt_identity())


def register_jwt_handlers(jwt):
    @jwt.unauthorized_loader
    def missing_token(reason):
        return jsonify({"error": "Unauthorized", "detail": reason}), 401

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return jsonify({"error": "Unauthorized", "detail": reason}), 401

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return jsonify({"error": "Unauthorized", "detail": "Token has expired"}), 401
