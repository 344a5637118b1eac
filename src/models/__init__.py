"""
Database models - import all models here so Alembic can discover them.
"""
from src.models.brand import Brand, Category
from src.models.topic import Topic
from src.models.content_draft import ContentDraft, Approval
from src.models.content_variant import ContentVariant
from src.models.connector import WebsiteConnector, SocialConnector
from src.models.publish_job import PublishJob
from src.models.metric import Metric
from src.models.task_queue import TaskQueue

__all__ = [
    "Brand",
    "Category",
    "Topic",
    "ContentDraft",
    "Approval",
    "ContentVariant",
    "WebsiteConnector",
    "SocialConnector",
    "PublishJob",
    "Metric",
    "TaskQueue",
]
