"""Adaptive quiz generation.

Characters the learner gets wrong are weighted up, then drawn without
replacement so a quiz leans toward weak characters while every character
keeps a nonzero chance of appearing.
"""
import logging
import random
from dataclasses import dataclass, field, fields, replace

logger = logging.getLogger(__name__)

# Weight for a character the learner has never attempted
NEW_CHARACTER_WEIGHT = 2
BASE_WEIGHT = 1


@dataclass(frozen=True)
class QuizConfig:
    question_count: int = 10
    options_count: int = 4
    weak_character_weight: float = 3
    min_attempts_for_mastery: int = 5
    mastery_threshold: float = 0.8

    # Accepted spellings for each field in request payloads
    _ALIASES = {
        "questionCount": "question_count",
        "optionsCount": "options_count",
        "weakCharacterWeight": "weak_character_weight",
        "minAttemptsForMastery": "min_attempts_for_mastery",
        "masteryThreshold": "mastery_threshold",
    }

    @classmethod
    def from_mapping(cls, data=None, base=None):
        """Overlay a partial (camelCase or snake_case) mapping onto ``base``.

        Unknown keys are ignored. Raises ValueError on non-numeric or
        out-of-range values.
        """
        base = base or cls()
        if not data:
            return base
        names = {f.name for f in fields(cls)}
        changes = {}
        for key, value in data.items():
            name = cls._ALIASES.get(key, key)
            if name not in names or value is None:
                continue
            caster = float if name in ("weak_character_weight", "mastery_threshold") else int
            try:
                changes[name] = caster(value)
            except (TypeError, ValueError):
                raise ValueError(f"invalid value for {key}: {value!r}")
        config = replace(base, **changes)
        config.validate()
        return config

    def validate(self):
        if self.question_count < 1:
            raise ValueError("question_count must be at least 1")
        if self.options_count < 1:
            raise ValueError("options_count must be at least 1")
        if self.weak_character_weight < 0:
            raise ValueError("weak_character_weight cannot be negative")
        if not 0 <= self.mastery_threshold <= 1:
            raise ValueError("mastery_threshold must be between 0 and 1")


DEFAULT_QUIZ_CONFIG = QuizConfig()


@dataclass(frozen=True)
class QuizCharacter:
    id: int
    character: str
    reading: str
    type: str

    @classmethod
    def from_model(cls, c):
        return cls(id=c.id, character=c.character, reading=c.reading, type=c.type)

    def to_dict(self):
        return {"id": self.id, "character": self.character, "reading": self.reading, "type": self.type}


@dataclass(eq=False)
class WeightedCharacter:
    character: QuizCharacter
    weight: float
    accuracy: float


@dataclass
class QuizQuestion:
    character: QuizCharacter
    options: list = field(default_factory=list)
    correct_answer: str = ""

    def to_dict(self):
        return {
            "character": self.character.to_dict(),
            "options": list(self.options),
            "correct_answer": self.correct_answer,
        }


def answers_match(user_answer: str, correct_answer: str) -> bool:
    """The one correctness rule: case-insensitive exact match.

    Used by the server when recording answers and by the client sync queue
    when scoring locally, so the two never disagree.
    """
    return (user_answer or "").lower() == (correct_answer or "").lower()


def character_weight(total_attempts: int, correct_count: int, weak_character_weight=3) -> float:
    if not total_attempts:
        return NEW_CHARACTER_WEIGHT
    accuracy = correct_count / total_attempts
    return (1 - accuracy) * weak_character_weight + BASE_WEIGHT


def calculate_character_weights(characters, stats_by_id, config=DEFAULT_QUIZ_CONFIG):
    """Pair each character with its selection weight.

    ``stats_by_id`` maps character id to anything with ``total_attempts`` and
    ``correct_count``; characters missing from it count as never attempted.
    """
    weighted = []
    for character in characters:
        stats = stats_by_id.get(character.id)
        attempts = stats.total_attempts if stats else 0
        if not attempts:
            weighted.append(WeightedCharacter(character, NEW_CHARACTER_WEIGHT, 0.0))
            continue
        accuracy = stats.correct_count / attempts
        weight = character_weight(attempts, stats.correct_count, config.weak_character_weight)
        weighted.append(WeightedCharacter(character, weight, accuracy))
    return weighted


def weighted_random_select(items, rng=None):
    """Pick one item with probability proportional to its ``weight``."""
    if not items:
        raise ValueError("cannot select from an empty pool")
    rng = rng or random
    total = sum(item.weight for item in items)
    draw = rng.random() * total
    cumulative = 0.0
    for item in items:
        cumulative += item.weight
        if cumulative >= draw:
            return item
    # float rounding can leave draw a hair above the final sum
    return items[-1]


def select_adaptive_characters(weighted_characters, count, rng=None):
    """Weighted sampling without replacement over the remaining pool."""
    available = list(weighted_characters)
    selected = []
    while len(selected) < count and available:
        chosen = weighted_random_select(available, rng)
        selected.append(chosen.character)
        available.remove(chosen)
    return selected


def shuffled(items, rng=None):
    """Return a uniformly shuffled copy."""
    result = list(items)
    (rng or random).shuffle(result)
    return result


def unique_readings(characters):
    """Readings in first-seen order, duplicates dropped."""
    return list(dict.fromkeys(c.reading for c in characters))


def generate_wrong_options(correct_reading, all_readings, count, rng=None):
    available = [r for r in dict.fromkeys(all_readings) if r != correct_reading]
    if count <= 0:
        return []
    if len(available) < count:
        logger.warning(
            "Only %d distractors available for %r (wanted %d)", len(available), correct_reading, count
        )
        count = len(available)
    return (rng or random).sample(available, count)


def build_questions(selected_characters, all_readings, options_count, rng=None):
    questions = []
    for character in selected_characters:
        wrong = generate_wrong_options(character.reading, all_readings, options_count - 1, rng)
        questions.append(QuizQuestion(
            character=character,
            options=shuffled([character.reading] + wrong, rng),
            correct_answer=character.reading,
        ))
    return questions


def generate_quiz(characters, stats_by_id, config=DEFAULT_QUIZ_CONFIG, rng=None):
    """Build the shuffled question list for one quiz over ``characters``.

    The selection bias decides which characters appear; their on-screen
    order is an independent shuffle.
    """
    weighted = calculate_character_weights(characters, stats_by_id, config)
    count = min(config.question_count, len(characters))
    selected = select_adaptive_characters(weighted, count, rng)
    questions = build_questions(selected, unique_readings(characters), config.options_count, rng)
    return shuffled(questions, rng)
