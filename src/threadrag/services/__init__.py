"""Service layer orchestrations for ThreadRAG."""

from .generation import GenerationConfig, LangChainChatModel, LanguageModel, TemplateModel, TransformersModel, build_models
from .orchestrator import GenerationOrchestrator, OrchestratorConfig, TurnOptions
from .prompting import PromptAssembler, TemplateRegistry, load_templates

__all__ = [
    "GenerationConfig",
    "GenerationOrchestrator",
    "LangChainChatModel",
    "LanguageModel",
    "OrchestratorConfig",
    "PromptAssembler",
    "TemplateModel",
    "TemplateRegistry",
    "TransformersModel",
    "TurnOptions",
    "build_models",
    "load_templates",
]
