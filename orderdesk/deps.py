from fastapi import Request

from orderdesk.service import OrderLifecycleService
from orderdesk.storage import Storage


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_service(request: Request) -> OrderLifecycleService:
    return OrderLifecycleService(request.app.state.storage)
