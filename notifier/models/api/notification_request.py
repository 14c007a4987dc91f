# notifier/models/api/notification_request.py
"""
Notification API request models.
Used by routes for input validation.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DismissNotificationRequest(BaseModel):
    """Mark one notification, or every unread notification of a task, as read."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_email: str | None = Field(default=None, description="Owner of the notifications")
    notification_id: str | None = Field(default=None, description="Single notification to dismiss")
    task_id: str | None = Field(default=None, description="Dismiss all unread alerts for this task")
