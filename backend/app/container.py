from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from app.config import Settings, load_settings
from app.services.conversations import ConversationMatcher
from app.services.database import Database
from app.services.directory import UserDirectory
from app.services.lifecycle import RequestLifecycle
from app.services.notification_store import NotificationFanout
from app.services.project_updates import ProjectUpdateLog
from app.services.push_sender import PushSender
from app.services.request_store import RequestStore
from app.services.reviews import ReviewStore


@dataclass
class Container:
    settings: Settings
    db: Database
    requests: RequestStore
    updates: ProjectUpdateLog
    conversations: ConversationMatcher
    notifications: NotificationFanout
    reviews: ReviewStore
    directory: UserDirectory
    lifecycle: RequestLifecycle


def build_container(settings: Optional[Settings] = None, push_sender: Optional[PushSender] = None) -> Container:
    settings = settings or load_settings()
    db = Database(settings.db_path, provision_indexes=settings.provision_indexes)
    requests = RequestStore(db)
    updates = ProjectUpdateLog(db)
    conversations = ConversationMatcher(db)
    notifications = NotificationFanout(db, push_sender or PushSender(settings.firebase_credentials_path))
    directory = UserDirectory(db)
    return Container(
        settings=settings,
        db=db,
        requests=requests,
        updates=updates,
        conversations=conversations,
        notifications=notifications,
        reviews=ReviewStore(db),
        directory=directory,
        lifecycle=RequestLifecycle(
            db=db,
            requests=requests,
            updates=updates,
            notifications=notifications,
            conversations=conversations,
            directory=directory,
        ),
    )


def get_container(request: Request) -> Container:
    return request.app.state.container
