"""
Global exception handlers for FastAPI.

Maps chat core exceptions to HTTP responses so a host app's routers can
call the services without try/except boilerplate. Register with
register_exception_handlers(app).
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def error_response(status_code: int, detail: str, code: Optional[str] = None) -> JSONResponse:
    """Build a standardized error JSON response."""
    content: dict = {"detail": detail}
    if code:
        content["code"] = code
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    """Register all chat core exception handlers on the FastAPI app."""
    from chat_core.models.errors import (
        ConcurrentModificationError,
        ConflictError,
        ConversationNotFoundError,
        ConversationStateError,
        EditWindowExpiredError,
        ForbiddenError,
        GoneError,
        InsufficientRoleError,
        InvalidStateError,
        MemberNotActiveError,
        MembersAlreadyPresentError,
        MessageNotFoundError,
        NotConversationMemberError,
        NotFoundError,
        NotGroupError,
        NotMessageOwnerError,
        SelfConversationError,
        UserNotFoundError,
        ValidationError,
    )

    # --- Not found ---

    @app.exception_handler(ConversationNotFoundError)
    async def _conversation_not_found(
        request: Request, exc: ConversationNotFoundError
    ) -> JSONResponse:
        return error_response(404, "Conversation not found.", "CONVERSATION_NOT_FOUND")

    @app.exception_handler(MessageNotFoundError)
    async def _message_not_found(request: Request, exc: MessageNotFoundError) -> JSONResponse:
        return error_response(404, "Message not found.", "MESSAGE_NOT_FOUND")

    @app.exception_handler(UserNotFoundError)
    async def _user_not_found(request: Request, exc: UserNotFoundError) -> JSONResponse:
        return error_response(404, "User not found.", "USER_NOT_FOUND")

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return error_response(404, str(exc) or "Not found.", "NOT_FOUND")

    # --- Forbidden ---

    @app.exception_handler(NotConversationMemberError)
    async def _not_member(request: Request, exc: NotConversationMemberError) -> JSONResponse:
        return error_response(403, "You are not a member of this conversation.", "NOT_MEMBER")

    @app.exception_handler(InsufficientRoleError)
    async def _insufficient_role(request: Request, exc: InsufficientRoleError) -> JSONResponse:
        return error_response(403, str(exc), "INSUFFICIENT_ROLE")

    @app.exception_handler(NotMessageOwnerError)
    async def _not_message_owner(request: Request, exc: NotMessageOwnerError) -> JSONResponse:
        return error_response(403, str(exc), "NOT_MESSAGE_OWNER")

    @app.exception_handler(ForbiddenError)
    async def _forbidden(request: Request, exc: ForbiddenError) -> JSONResponse:
        return error_response(403, str(exc) or "Forbidden.", "FORBIDDEN")

    # --- Conflict ---

    @app.exception_handler(SelfConversationError)
    async def _self_conversation(request: Request, exc: SelfConversationError) -> JSONResponse:
        return error_response(
            409, "Cannot start a conversation with yourself.", "SELF_CONVERSATION"
        )

    @app.exception_handler(MembersAlreadyPresentError)
    async def _members_present(
        request: Request, exc: MembersAlreadyPresentError
    ) -> JSONResponse:
        return error_response(
            409, "All users are already members of this group.", "MEMBERS_ALREADY_PRESENT"
        )

    @app.exception_handler(ConcurrentModificationError)
    async def _concurrent_modification(
        request: Request, exc: ConcurrentModificationError
    ) -> JSONResponse:
        logger.warning("Concurrent modification on %s: %s", request.url.path, exc)
        return error_response(
            409, "The conversation changed concurrently, please retry.", "CONCURRENT_MODIFICATION"
        )

    @app.exception_handler(ConflictError)
    async def _conflict(request: Request, exc: ConflictError) -> JSONResponse:
        return error_response(409, str(exc) or "Conflict.", "CONFLICT")

    # --- Invalid state ---

    @app.exception_handler(ConversationStateError)
    async def _conversation_state(request: Request, exc: ConversationStateError) -> JSONResponse:
        return error_response(409, str(exc), "INVALID_STATE")

    @app.exception_handler(NotGroupError)
    async def _not_group(request: Request, exc: NotGroupError) -> JSONResponse:
        return error_response(
            409, "This action only applies to group conversations.", "NOT_GROUP"
        )

    @app.exception_handler(MemberNotActiveError)
    async def _member_not_active(request: Request, exc: MemberNotActiveError) -> JSONResponse:
        return error_response(409, str(exc), "MEMBER_NOT_ACTIVE")

    @app.exception_handler(InvalidStateError)
    async def _invalid_state(request: Request, exc: InvalidStateError) -> JSONResponse:
        return error_response(409, str(exc) or "Invalid state.", "INVALID_STATE")

    # --- Gone ---

    @app.exception_handler(EditWindowExpiredError)
    async def _edit_window_expired(request: Request, exc: EditWindowExpiredError) -> JSONResponse:
        return error_response(
            410,
            f"Messages can only be edited within {exc.window_hours} hours.",
            "EDIT_WINDOW_EXPIRED",
        )

    @app.exception_handler(GoneError)
    async def _gone(request: Request, exc: GoneError) -> JSONResponse:
        return error_response(410, str(exc) or "Gone.", "GONE")

    # --- Validation ---

    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError) -> JSONResponse:
        return error_response(422, str(exc), "VALIDATION_ERROR")

    # --- Catch-all ---

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return error_response(500, "Internal server error.", "INTERNAL_ERROR")
