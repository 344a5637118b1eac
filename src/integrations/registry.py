"""
Publisher registry - Platform -> Publisher instance.
Adding a platform means registering one class here.
"""
from typing import Optional

from src.integrations.facebook import FacebookPublisher
from src.integrations.instagram import InstagramPublisher
from src.integrations.linkedin import LinkedInPublisher
from src.integrations.publisher_base import Publisher
from src.integrations.twitter import TwitterPublisher
from src.integrations.website import WebsitePublisher
from src.models.content_variant import Platform

PUBLISHER_CLASSES: dict[Platform, type[Publisher]] = {
    Platform.WEBSITE: WebsitePublisher,
    Platform.FACEBOOK: FacebookPublisher,
    Platform.TWITTER: TwitterPublisher,
    Platform.LINKEDIN: LinkedInPublisher,
    Platform.INSTAGRAM: InstagramPublisher,
}

_instances: dict[Platform, Publisher] = {}


def get_publisher(platform) -> Publisher:
    """Shared publisher for a platform. Raises ValueError for unknown platforms."""
    key = Platform(platform)
    if key not in _instances:
        _instances[key] = PUBLISHER_CLASSES[key]()
    return _instances[key]


def register_publisher(platform, publisher: Optional[Publisher]) -> None:
    """Install (or with None, clear) the instance used for a platform."""
    key = Platform(platform)
    if publisher is None:
        _instances.pop(key, None)
    else:
        _instances[key] = publisher
