"""Static agent card served at /.well-known/agent-card.json."""

from __future__ import annotations

from pydantic import BaseModel, Field


class AgentSkill(BaseModel):
    id: str
    name: str
    description: str
    tags: list[str] = Field(default_factory=list)
    examples: list[str] = Field(default_factory=list)
    input_modes: list[str] = Field(default_factory=lambda: ["text"])
    output_modes: list[str] = Field(default_factory=lambda: ["text"])


class AgentCapabilities(BaseModel):
    streaming: bool = True
    push_notifications: bool = False
    state_transition_history: bool = True


class AgentCard(BaseModel):
    name: str
    description: str
    url: str
    version: str
    protocol_version: str = "0.3.0"
    capabilities: AgentCapabilities = Field(default_factory=AgentCapabilities)
    default_input_modes: list[str] = Field(default_factory=lambda: ["text"])
    default_output_modes: list[str] = Field(default_factory=lambda: ["text"])
    skills: list[AgentSkill] = Field(default_factory=list)


def build_agent_card(*, url: str, version: str = "0.1.0") -> AgentCard:
    return AgentCard(
        name="Coder Agent",
        description=(
            "Runs resumable coding tasks: an agent model edits a workspace through "
            "file and shell tools and streams its progress."
        ),
        url=url,
        version=version,
        skills=[
            AgentSkill(
                id="code_generation",
                name="Code Generation",
                description="Reads, writes and edits files in a task workspace on request.",
                tags=["code", "development", "programming"],
                examples=[
                    "Write a python function to calculate fibonacci numbers.",
                    "Add a README that explains how to run the tests.",
                ],
            )
        ],
    )
