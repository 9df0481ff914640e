import json
from contextlib import contextmanager
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import check_password_hash, generate_password_hash

db = SQLAlchemy()

HIRAGANA = "hiragana"
KATAKANA = "katakana"
CHARACTER_TYPES = (HIRAGANA, KATAKANA)


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so we never store it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@contextmanager
def atomic():
    """Run a block of writes as one transaction: commit on success, roll back on error."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


class User(db.Model):
    __tablename__ = "user"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    metadata_json = db.Column(db.Text, nullable=False, default="{}")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    quiz_sessions = db.relationship("QuizSession", backref="user", lazy=True, cascade="all, delete-orphan")
    character_stats = db.relationship("UserCharacterStats", backref="user", lazy=True, cascade="all, delete-orphan")
    progress = db.relationship("UserProgress", backref="user", lazy=True, cascade="all, delete-orphan")

    def set_password(self, plaintext: str):
        self.password_hash = generate_password_hash(plaintext)

    def check_password(self, plaintext: str) -> bool:
        return check_password_hash(self.password_hash, plaintext)

    @property
    def user_metadata(self) -> dict:
        return json.loads(self.metadata_json or "{}")

    @user_metadata.setter
    def user_metadata(self, value: dict):
        self.metadata_json = json.dumps(value or {})

    def to_dict(self):
        return {"id": self.id, "email": self.email, "metadata": self.user_metadata}

    def __repr__(self):
        return f"<User {self.email}>"


class Character(db.Model):
    __tablename__ = "character"
    __table_args__ = (db.UniqueConstraint("type", "order", name="uq_character_type_order"),)

    id = db.Column(db.Integer, primary_key=True)
    character = db.Column(db.String(8), nullable=False)
    reading = db.Column(db.String(16), nullable=False)
    type = db.Column(db.String(16), nullable=False)
    order = db.Column(db.Integer, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "character": self.character,
            "reading": self.reading,
            "type": self.type,
        }

    def __repr__(self):
        return f"<Character {self.character} ({self.reading})>"


class Module(db.Model):
    __tablename__ = "module"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    order = db.Column(db.Integer, unique=True, nullable=False)

    module_characters = db.relationship(
        "ModuleCharacter",
        backref="module",
        lazy=True,
        order_by="ModuleCharacter.order",
        cascade="all, delete-orphan",
    )

    @property
    def characters(self):
        """Characters in their per-module order."""
        return [mc.character for mc in self.module_characters]

    def __repr__(self):
        return f"<Module {self.order}: {self.name}>"


class ModuleCharacter(db.Model):
    __tablename__ = "module_character"
    __table_args__ = (db.UniqueConstraint("module_id", "character_id", name="uq_module_character"),)

    id = db.Column(db.Integer, primary_key=True)
    module_id = db.Column(db.Integer, db.ForeignKey("module.id"), nullable=False)
    character_id = db.Column(db.Integer, db.ForeignKey("character.id"), nullable=False)
    order = db.Column(db.Integer, nullable=False)

    character = db.relationship("Character", lazy="joined")


class UserCharacterStats(db.Model):
    __tablename__ = "user_character_stats"
    __table_args__ = (db.UniqueConstraint("user_id", "character_id", name="uq_user_character_stats"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    character_id = db.Column(db.Integer, db.ForeignKey("character.id"), nullable=False)
    total_attempts = db.Column(db.Integer, nullable=False, default=0)
    correct_count = db.Column(db.Integer, nullable=False, default=0)
    streak_count = db.Column(db.Integer, nullable=False, default=0)
    last_attempt_at = db.Column(db.DateTime, nullable=True)

    character = db.relationship("Character", lazy="joined")

    @property
    def accuracy(self) -> float:
        return self.correct_count / self.total_attempts if self.total_attempts else 0.0

    def record(self, is_correct: bool, when=None):
        """Fold one attempt into the counters."""
        self.total_attempts = (self.total_attempts or 0) + 1
        if is_correct:
            self.correct_count = (self.correct_count or 0) + 1
            self.streak_count = (self.streak_count or 0) + 1
        else:
            self.correct_count = self.correct_count or 0
            self.streak_count = 0
        self.last_attempt_at = when or utcnow()

    def __repr__(self):
        return f"<UserCharacterStats user={self.user_id} char={self.character_id} {self.correct_count}/{self.total_attempts}>"


class QuizSession(db.Model):
    __tablename__ = "quiz_session"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    module_id = db.Column(db.Integer, db.ForeignKey("module.id"), nullable=False)
    total_items = db.Column(db.Integer, nullable=False)
    score = db.Column(db.Integer, nullable=False, default=0)
    options_count = db.Column(db.Integer, nullable=False, default=4)
    # JSON array of character ids in presentation order
    character_ids_json = db.Column(db.Text, nullable=False, default="[]")
    started_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    module = db.relationship("Module", lazy="joined")
    answers = db.relationship("QuizAnswer", backref="session", lazy=True, cascade="all, delete-orphan")

    @property
    def character_ids(self) -> list:
        return json.loads(self.character_ids_json or "[]")

    @character_ids.setter
    def character_ids(self, value):
        self.character_ids_json = json.dumps(list(value))

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def percentage(self) -> float:
        return self.score / self.total_items * 100 if self.total_items else 0.0

    @property
    def time_spent_ms(self) -> int:
        end = self.completed_at or utcnow()
        return int((end - self.started_at).total_seconds() * 1000)

    def __repr__(self):
        state = "completed" if self.is_completed else "active"
        return f"<QuizSession {self.id} {self.score}/{self.total_items} {state}>"


class QuizAnswer(db.Model):
    __tablename__ = "quiz_answer"
    __table_args__ = (db.UniqueConstraint("session_id", "character_id", name="uq_quiz_answer_session_character"),)

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("quiz_session.id"), nullable=False)
    character_id = db.Column(db.Integer, db.ForeignKey("character.id"), nullable=False)
    user_answer = db.Column(db.String(64), nullable=False)
    is_correct = db.Column(db.Boolean, nullable=False)
    response_time_ms = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<QuizAnswer session={self.session_id} char={self.character_id} {'ok' if self.is_correct else 'miss'}>"


class UserProgress(db.Model):
    __tablename__ = "user_progress"
    __table_args__ = (db.UniqueConstraint("user_id", "module_id", name="uq_user_progress"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    module_id = db.Column(db.Integer, db.ForeignKey("module.id"), nullable=False)
    percentage = db.Column(db.Float, nullable=False, default=0.0)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<UserProgress user={self.user_id} module={self.module_id} {self.percentage:.1f}%>"
