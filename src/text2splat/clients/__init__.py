from .prompt_client import PromptOptimizer
from .recon_client import ReconstructionClient
from .veo_client import GenerationOptions, VideoGenerationClient, VideoPoll

__all__ = [
    "GenerationOptions",
    "PromptOptimizer",
    "ReconstructionClient",
    "VideoGenerationClient",
    "VideoPoll",
]
