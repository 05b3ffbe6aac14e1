"""Channel publishers. Importing this package registers every automated channel."""

from marketing_agent.publishers.base import PUBLISHERS, PublishResult, get_publisher_class, register_publisher
from marketing_agent.publishers.blog import BlogPublisher
from marketing_agent.publishers.image_feed import ImageFeedPublisher
from marketing_agent.publishers.micro_post import MicroPostPublisher

__all__ = [
    "PUBLISHERS",
    "PublishResult",
    "get_publisher_class",
    "register_publisher",
    "BlogPublisher",
    "ImageFeedPublisher",
    "MicroPostPublisher",
]
