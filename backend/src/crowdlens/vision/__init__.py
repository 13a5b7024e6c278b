"""Vision provider contract and implementations.

Usage:
    from crowdlens.vision import create_vision_provider

    provider = create_vision_provider('dummy')
    result = provider.analyze_photo(image_bytes, photo_id)
"""

from .provider import (
    DetectedClothingItem,
    DetectedFace,
    DetectedPerson,
    DetectedText,
    PhotoDetectionResult,
    TextType,
    VisionProvider,
)
from .dummy import DummyVisionProvider

PROVIDERS = {
    'dummy': DummyVisionProvider,
}


def create_vision_provider(name: str = 'dummy', **kwargs) -> VisionProvider:
    """Create a vision provider by name.

    Args:
        name: Provider name
        **kwargs: Passed to the provider constructor

    Raises:
        ValueError: If no provider is registered under that name
    """
    try:
        provider_class = PROVIDERS[name]
    except KeyError:
        raise ValueError(
            f"Unknown vision provider: {name}. "
            f"Choose from: {', '.join(sorted(PROVIDERS))}"
        )
    return provider_class(**kwargs)


__all__ = [
    'DetectedClothingItem',
    'DetectedFace',
    'DetectedPerson',
    'DetectedText',
    'PhotoDetectionResult',
    'TextType',
    'VisionProvider',
    'DummyVisionProvider',
    'create_vision_provider',
]
