"""
Device Profiles

Recommended context size and generation settings for small models on
constrained hardware, adjusted for model size and available RAM.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class DeviceProfile:
    """Recommended settings for one class of device."""

    target: str
    context_length: int
    gpu_layers: int
    max_tokens: int
    temperature: float
    description: str
    tips: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "context_length": self.context_length,
            "gpu_layers": self.gpu_layers,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "description": self.description,
            "tips": list(self.tips),
        }


PROFILES = {
    "mobile": DeviceProfile(
        target="mobile",
        context_length=512,
        gpu_layers=0,
        max_tokens=50,
        temperature=0.7,
        description="Optimized for mobile devices with limited RAM",
    ),
    "laptop": DeviceProfile(
        target="laptop",
        context_length=1024,
        gpu_layers=0,
        max_tokens=100,
        temperature=0.8,
        description="Balanced performance for laptops",
    ),
    "desktop": DeviceProfile(
        target="desktop",
        context_length=2048,
        gpu_layers=0,
        max_tokens=150,
        temperature=0.8,
        description="Higher quality for desktop systems",
    ),
    "server": DeviceProfile(
        target="server",
        context_length=4096,
        gpu_layers=0,
        max_tokens=200,
        temperature=0.8,
        description="Maximum quality for server deployments",
    ),
}


def recommend_profile(
    target: str = "laptop",
    model_size_mb: Optional[float] = None,
    available_ram_gb: Optional[float] = None,
) -> DeviceProfile:
    """
    Recommend settings for a device class.

    Args:
        target: One of mobile, laptop, desktop, server
        model_size_mb: Model file size; small models get more context,
            models over 2GB get less
        available_ram_gb: Free RAM; under 4GB caps context at 512,
            over 16GB grows it

    Returns:
        A new DeviceProfile (the presets are never mutated)
    """
    if target not in PROFILES:
        logger.warning(f"Unknown target '{target}'. Using 'laptop' defaults.")
        target = "laptop"

    profile = replace(PROFILES[target])
    n_ctx = float(profile.context_length)
    n_predict = float(profile.max_tokens)

    if model_size_mb is not None:
        if model_size_mb < 1000:
            n_ctx = min(n_ctx * 1.5, 2048)
            n_predict = min(n_predict * 1.2, 200)
        elif model_size_mb > 2000:
            n_ctx = max(n_ctx * 0.75, 512)
            n_predict = max(n_predict * 0.8, 50)

    if available_ram_gb is not None:
        if available_ram_gb < 4:
            n_ctx = min(n_ctx, 512)
            n_predict = min(n_predict, 50)
        elif available_ram_gb > 16:
            n_ctx = min(n_ctx * 1.5, 4096)
            n_predict = min(n_predict * 1.5, 300)

    profile.context_length = int(n_ctx)
    profile.max_tokens = int(n_predict)
    profile.tips = [
        f"Recommended context size: {profile.context_length} tokens",
        f"Recommended generation length: {profile.max_tokens} tokens",
        "For faster inference, use temperature=0.0 (greedy decoding)",
        "For better quality, increase temperature to 0.8-1.0",
        "Small models work best with concise, clear prompts",
    ]
    return profile
