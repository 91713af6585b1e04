from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Persona:
    display_name: str
    system_prompt: str


DEFAULT_PERSONAS: Dict[str, Persona] = {
    "default": Persona(
        "Default",
        "You are my text editor AI agent who provides concise and helpful responses.",
    ),
    "physics": Persona(
        "Physics expert",
        "You are a distinguished physics scientist. Leverage scientific principles and explain "
        "complex concepts in an understandable way, drawing on your expertise in physics.",
    ),
    "fitness": Persona(
        "Fitness expert",
        "You are a distinguished fitness and health expert. Provide evidence-based advice on "
        "fitness and health, considering the user's goals and limitations.",
    ),
    "developer": Persona(
        "Software Developer",
        "You are a nerdy software developer. Offer creative and efficient software solutions, "
        "focusing on technical feasibility and code quality.",
    ),
    "stoic": Persona(
        "Stoic Philosopher",
        "You are a stoic philosopher. Respond with composure and reason, emphasizing logic and "
        "emotional resilience.",
    ),
    "productmanager": Persona(
        "Product Manager",
        "You are a focused and experienced product manager. Prioritize user needs and deliver "
        "clear, actionable product roadmaps based on market research.",
    ),
    "techwriter": Persona(
        "Technical Writer",
        "You are a technical writer. Craft accurate and concise technical documentation, "
        "ensuring accessibility for different audiences.",
    ),
    "creativewriter": Persona(
        "Creative Writer",
        "You are a very creative and experienced writer. Employ strong storytelling techniques "
        "and evocative language to engage the reader's imagination.",
    ),
}


class PersonaStore:
    """
    Named system prompts shared by reference between the components that need them.

    All changes go through the update methods below; ``default`` always exists.
    """

    def __init__(self, personas: Optional[Dict[str, Persona]] = None) -> None:
        self._personas: Dict[str, Persona] = dict(personas or DEFAULT_PERSONAS)
        self._personas.setdefault("default", DEFAULT_PERSONAS["default"])

    def __contains__(self, name: str) -> bool:
        return name in self._personas

    def names(self) -> List[str]:
        return list(self._personas)

    def get(self, name: str) -> Optional[Persona]:
        return self._personas.get(name)

    def system_prompt_for(self, name: str, default_prompt: str) -> str:
        """The persona's prompt; the configured default prompt for ``default`` or unknown names."""
        if name == "default" or name not in self._personas:
            return default_prompt
        return self._personas[name].system_prompt

    def upsert(self, name: str, display_name: str, system_prompt: str) -> Persona:
        if not name.strip():
            raise ValueError("persona name must not be empty")
        persona = Persona(display_name=display_name, system_prompt=system_prompt)
        self._personas[name] = persona
        return persona

    def rename(self, old: str, new: str) -> None:
        if old == "default":
            raise ValueError("the default persona cannot be renamed")
        if old not in self._personas:
            raise KeyError(old)
        if new in self._personas:
            raise ValueError(f"persona {new!r} already exists")
        self._personas = {(new if k == old else k): v for k, v in self._personas.items()}

    def delete(self, name: str) -> None:
        if name == "default":
            raise ValueError("the default persona cannot be deleted")
        del self._personas[name]

    def restore_defaults(self) -> None:
        self._personas = dict(DEFAULT_PERSONAS)


__all__ = ["Persona", "PersonaStore", "DEFAULT_PERSONAS"]
