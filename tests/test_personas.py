import pytest

from notes_rag.personas import DEFAULT_PERSONAS, PersonaStore


@pytest.fixture
def personas():
    return PersonaStore()


def test_ships_default_personas(personas):
    assert personas.names() == list(DEFAULT_PERSONAS)
    assert "default" in personas


def test_default_and_unknown_use_configured_prompt(personas):
    assert personas.system_prompt_for("default", "be brief") == "be brief"
    assert personas.system_prompt_for("nobody", "be brief") == "be brief"
    assert personas.system_prompt_for("physics", "be brief") == DEFAULT_PERSONAS["physics"].system_prompt


def test_upsert_adds_and_replaces(personas):
    personas.upsert("chef", "Chef", "You are a chef.")
    assert personas.system_prompt_for("chef", "x") == "You are a chef."
    personas.upsert("chef", "Chef", "You are a pastry chef.")
    assert personas.get("chef").system_prompt == "You are a pastry chef."


def test_rename_keeps_prompt(personas):
    personas.rename("stoic", "philosopher")
    assert "stoic" not in personas
    assert personas.get("philosopher") == DEFAULT_PERSONAS["stoic"]


@pytest.mark.parametrize("action", ["rename", "delete"])
def test_default_is_protected(personas, action):
    with pytest.raises(ValueError):
        if action == "rename":
            personas.rename("default", "other")
        else:
            personas.delete("default")


def test_rename_to_existing_name_fails(personas):
    with pytest.raises(ValueError):
        personas.rename("stoic", "physics")


def test_restore_defaults(personas):
    personas.delete("fitness")
    personas.upsert("chef", "Chef", "You are a chef.")
    personas.restore_defaults()
    assert personas.names() == list(DEFAULT_PERSONAS)
