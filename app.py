import logging
import os
from functools import wraps

import click
from flask import Blueprint, Flask, jsonify, request, session
from flask.cli import with_appcontext

from curriculum import get_modules_with_progress, get_progress_summary, get_unlocked_module, seed_curriculum
from errors import InvalidRequest, NotAuthenticated, NotFound, QuizError
from models import User, db
from quiz import DEFAULT_QUIZ_CONFIG, QuizConfig
from quiz_sessions import (
    BatchAnswer, abandon_quiz, complete_quiz, get_active_quiz_session, get_quiz_progress,
    get_quiz_result, start_quiz, submit_answer, submit_answers_batch,
)
from stats import get_characters_needing_practice, get_module_quiz_stats, get_overall_quiz_stats, get_quiz_history

logger = logging.getLogger(__name__)

basedir = os.path.abspath(os.path.dirname(__file__))

api = Blueprint("api", __name__, url_prefix="/api")


def _database_url():
    url = os.environ.get("DATABASE_URL", "sqlite:///" + os.path.join(basedir, "kana_trainer.db"))
    # Heroku/Render style URLs are not accepted by SQLAlchemy
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def create_app(test_config=None):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
    app.config["SQLALCHEMY_DATABASE_URI"] = _database_url()
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO")
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db.init_app(app)
    app.register_blueprint(api)
    app.register_error_handler(QuizError, _quiz_error)
    app.cli.add_command(seed_command)

    with app.app_context():
        db.create_all()
    return app


@click.command("seed")
@click.option("--reset", is_flag=True, help="Wipe the curriculum and all learner data first.")
@with_appcontext
def seed_command(reset):
    """Load the hiragana/katakana curriculum."""
    created = seed_curriculum(reset=reset)
    click.echo(f"Created {created} modules." if created else "Curriculum already present.")


# ── Helpers ───────────────────────────────────────────────────────────────────

def ok(data=None, status=200):
    return jsonify({"success": True, "data": data}), status


def _quiz_error(error):
    logger.info("%s %s rejected: %s", request.method, request.path, error.message)
    return jsonify({"success": False, "error": error.message}), error.status_code


def current_user():
    """Return the logged-in User object, or None."""
    uid = session.get("user_id")
    if uid is None:
        return None
    return db.session.get(User, uid)


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if current_user() is None:
            raise NotAuthenticated()
        return f(*args, **kwargs)
    return decorated


def _json_body():
    data = request.get_json(force=True, silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest("Expected a JSON object")
    return data


def _quiz_config(data):
    try:
        return QuizConfig.from_mapping(data.get("config") or {}, base=DEFAULT_QUIZ_CONFIG)
    except ValueError as exc:
        raise InvalidRequest(str(exc))


def _int_arg(name, default):
    value = request.args.get(name, type=int)
    return default if value is None or value < 1 else value


# ── Auth routes ───────────────────────────────────────────────────────────────

@api.route("/register", methods=["POST"])
def register():
    data = _json_body()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        raise InvalidRequest("Email and password are required.")
    if User.query.filter_by(email=email).first():
        raise InvalidRequest("That email is already registered.")
    user = User(email=email)
    user.set_password(password)
    user.user_metadata = data.get("metadata") or {}
    db.session.add(user)
    db.session.commit()
    session["user_id"] = user.id
    logger.info("Registered user %s", user.id)
    return ok(user.to_dict(), 201)


@api.route("/login", methods=["POST"])
def login():
    data = _json_body()
    email = (data.get("email") or "").strip().lower()
    user = User.query.filter_by(email=email).first()
    if user is None or not user.check_password(data.get("password") or ""):
        raise NotAuthenticated("Invalid email or password.")
    session["user_id"] = user.id
    return ok(user.to_dict())


@api.route("/logout", methods=["POST"])
def logout():
    session.pop("user_id", None)
    return ok()


@api.route("/me")
@login_required
def me():
    return ok(current_user().to_dict())


# ── Modules & progress ────────────────────────────────────────────────────────

@api.route("/modules")
@login_required
def modules():
    return ok(get_modules_with_progress(current_user().id))


@api.route("/modules/<int:module_id>")
@login_required
def module_detail(module_id):
    module = get_unlocked_module(current_user().id, module_id)
    return ok({
        "id": module["id"],
        "name": module["name"],
        "characters": module["characters"],
        "progress": module["progress"],
        "is_completed": module["is_completed"],
    })


@api.route("/progress")
@login_required
def progress_summary():
    return ok(get_progress_summary(current_user().id))


# ── Quiz lifecycle ────────────────────────────────────────────────────────────

@api.route("/modules/<int:module_id>/quiz", methods=["POST"])
@login_required
def start_quiz_route(module_id):
    config = _quiz_config(_json_body())
    quiz_session = start_quiz(current_user().id, module_id, config)
    return ok(quiz_session.to_dict(), 201)


@api.route("/quiz/<int:session_id>")
@login_required
def active_quiz(session_id):
    quiz_session = get_active_quiz_session(current_user().id, session_id)
    if quiz_session is None:
        raise NotFound("Quiz session not found or already completed")
    return ok(quiz_session.to_dict())


@api.route("/quiz/<int:session_id>/progress")
@login_required
def quiz_progress(session_id):
    return ok(get_quiz_progress(current_user().id, session_id))


@api.route("/quiz/<int:session_id>/answer", methods=["POST"])
@login_required
def submit_answer_route(session_id):
    answer = BatchAnswer.from_dict(_json_body())
    result = submit_answer(current_user().id, session_id, answer.character_id,
                           answer.user_answer, answer.response_time_ms)
    return ok(result.to_dict())


@api.route("/quiz/<int:session_id>/answers", methods=["POST"])
@login_required
def submit_answers_batch_route(session_id):
    items = _json_body().get("answers")
    if not isinstance(items, list):
        raise InvalidRequest("answers must be a list")
    answers = [BatchAnswer.from_dict(item if isinstance(item, dict) else {}) for item in items]
    result = submit_answers_batch(current_user().id, session_id, answers)
    return ok(result.to_dict())


@api.route("/quiz/<int:session_id>/complete", methods=["POST"])
@login_required
def complete_quiz_route(session_id):
    return ok(complete_quiz(current_user().id, session_id).to_dict())


@api.route("/quiz/<int:session_id>/abandon", methods=["POST"])
@login_required
def abandon_quiz_route(session_id):
    abandon_quiz(current_user().id, session_id)
    return ok()


@api.route("/quiz/<int:session_id>/result")
@login_required
def quiz_result(session_id):
    result = get_quiz_result(current_user().id, session_id)
    if result is None:
        raise NotFound("Quiz result not found")
    return ok(result.to_dict())


# ── Statistics ────────────────────────────────────────────────────────────────

@api.route("/modules/<int:module_id>/stats")
@login_required
def module_stats(module_id):
    return ok(get_module_quiz_stats(current_user().id, module_id))


@api.route("/stats")
@login_required
def overall_stats():
    return ok(get_overall_quiz_stats(current_user().id))


@api.route("/modules/<int:module_id>/history")
@login_required
def quiz_history(module_id):
    return ok(get_quiz_history(current_user().id, module_id, limit=_int_arg("limit", 10)))


@api.route("/weak-characters")
@login_required
def weak_characters():
    module_id = request.args.get("module_id", type=int)
    return ok(get_characters_needing_practice(current_user().id, module_id, limit=_int_arg("limit", 10)))


if __name__ == "__main__":
    create_app().run(debug=True)
