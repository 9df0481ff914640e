"""Static curriculum: characters, modules and their ordering."""
import logging

from errors import ModuleLocked, NotFound
from models import (
    HIRAGANA, KATAKANA, Character, Module, ModuleCharacter, QuizAnswer,
    QuizSession, UserCharacterStats, UserProgress, db,
)
from progress import COMPLETION_THRESHOLD, is_module_accessible

logger = logging.getLogger(__name__)

# ── Seed data ─────────────────────────────────────────────────────────────────
# (glyph, reading) in syllabary order; every row of the gojūon table is one module

HIRAGANA_CHARACTERS = [
    ("あ", "a"),   ("い", "i"),   ("う", "u"),   ("え", "e"),  ("お", "o"),
    ("か", "ka"),  ("き", "ki"),  ("く", "ku"),  ("け", "ke"), ("こ", "ko"),
    ("さ", "sa"),  ("し", "shi"), ("す", "su"),  ("せ", "se"), ("そ", "so"),
    ("た", "ta"),  ("ち", "chi"), ("つ", "tsu"), ("て", "te"), ("と", "to"),
    ("な", "na"),  ("に", "ni"),  ("ぬ", "nu"),  ("ね", "ne"), ("の", "no"),
]

KATAKANA_CHARACTERS = [
    ("ア", "a"),   ("イ", "i"),   ("ウ", "u"),   ("エ", "e"),  ("オ", "o"),
    ("カ", "ka"),  ("キ", "ki"),  ("ク", "ku"),  ("ケ", "ke"), ("コ", "ko"),
    ("サ", "sa"),  ("シ", "shi"), ("ス", "su"),  ("セ", "se"), ("ソ", "so"),
    ("タ", "ta"),  ("チ", "chi"), ("ツ", "tsu"), ("テ", "te"), ("ト", "to"),
    ("ナ", "na"),  ("ニ", "ni"),  ("ヌ", "nu"),  ("ネ", "ne"), ("ノ", "no"),
]

LINE_NAMES = ["Vowels", "K-line", "S-line", "T-line", "N-line"]
LINE_SIZE = 5

SYLLABARIES = [
    (HIRAGANA, "Hiragana", HIRAGANA_CHARACTERS),
    (KATAKANA, "Katakana", KATAKANA_CHARACTERS),
]


def seed_curriculum(reset=False):
    """Insert the syllabary characters and the ten line modules.

    Does nothing when modules already exist, unless ``reset`` is set, in
    which case the curriculum and every learner record depending on it are
    wiped first. Returns the number of modules created.
    """
    if reset:
        # learner data references the curriculum, so it has to go first
        for model in (QuizAnswer, QuizSession, UserCharacterStats, UserProgress, ModuleCharacter, Module, Character):
            model.query.delete()
        db.session.commit()
        logger.info("Curriculum reset")
    elif Module.query.first() is not None:
        logger.info("Curriculum already seeded, skipping")
        return 0

    module_order = 0
    for char_type, label, table in SYLLABARIES:
        created = []
        for i, (glyph, reading) in enumerate(table, start=1):
            c = Character(character=glyph, reading=reading, type=char_type, order=i)
            db.session.add(c)
            created.append(c)

        for line_index, line_name in enumerate(LINE_NAMES):
            module_order += 1
            module = Module(name=f"{label} - {line_name}", order=module_order)
            db.session.add(module)
            chunk = created[line_index * LINE_SIZE:(line_index + 1) * LINE_SIZE]
            for position, c in enumerate(chunk, start=1):
                module.module_characters.append(ModuleCharacter(character=c, order=position))

    db.session.commit()
    logger.info("Seeded %d modules", module_order)
    return module_order


# ── Queries ───────────────────────────────────────────────────────────────────

def list_modules():
    return Module.query.order_by(Module.order.asc()).all()


def get_module(module_id):
    module = db.session.get(Module, module_id)
    if module is None:
        raise NotFound("Module not found")
    return module


def get_module_characters(module_id):
    """Characters of a module in their per-module order."""
    return get_module(module_id).characters


def get_character(character_id):
    character = db.session.get(Character, character_id)
    if character is None:
        raise NotFound("Character not found")
    return character


def _progress_map(user_id):
    rows = UserProgress.query.filter_by(user_id=user_id).all()
    return {p.module_id: p.percentage for p in rows}


def get_modules_with_progress(user_id):
    """Every module with the learner's progress, lock and "current" flags.

    The current module is the first unlocked module that is not yet
    completed.
    """
    modules = list_modules()
    progress_map = _progress_map(user_id)

    result = []
    current_found = False
    for index, module in enumerate(modules):
        progress = progress_map.get(module.id, 0.0)
        previous = progress_map.get(modules[index - 1].id, 0.0) if index > 0 else None
        is_unlocked = is_module_accessible(index, previous)
        is_completed = progress >= COMPLETION_THRESHOLD
        is_current = is_unlocked and not is_completed and not current_found
        if is_current:
            current_found = True
        result.append({
            "id": module.id,
            "name": module.name,
            "order": module.order,
            "characters": [c.to_dict() for c in module.characters],
            "progress": progress,
            "is_unlocked": is_unlocked,
            "is_completed": is_completed,
            "is_current": is_current,
        })
    return result


def get_unlocked_module(user_id, module_id):
    """One module with progress; refuses locked modules."""
    for module in get_modules_with_progress(user_id):
        if module["id"] == module_id:
            if not module["is_unlocked"]:
                raise ModuleLocked()
            return module
    raise NotFound("Module not found")


def get_progress_summary(user_id):
    modules = get_modules_with_progress(user_id)
    current = next((m for m in modules if m["is_current"]), None)
    next_module = None
    if current is not None:
        index = modules.index(current)
        if index < len(modules) - 1:
            next_module = modules[index + 1]
    return {
        "total_modules": len(modules),
        "completed_modules": sum(1 for m in modules if m["is_completed"]),
        "current_module": current,
        "next_module": next_module,
    }
