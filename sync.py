# ====== Synchronizations ======
from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence
from engine import Absent, Query, Sync, ThenAction, Var, WhenPattern, variables

INVALID_SESSION = "Invalid session"

def _title(name: str) -> str:
    name = name.lstrip("_")
    return name[:1].upper() + name[1:]

def _request(path: str, request: Var, **fields: Any) -> WhenPattern:
    return WhenPattern(concept="Requesting", action="request", inputs={"path": path, **fields}, outputs={"request": request})

def _respond(request: Var, **fields: Any) -> ThenAction:
    return ThenAction(concept="Requesting", action="respond", inputs={"request": request, **fields})

def _session_user(session: Var, user: Var) -> Query:
    return Query("Sessioning", "_getUser", {"session": session}, {"user": user})

def auth_error(name: str, path: str) -> Sync:
    """Answer a request carrying a session that resolves to no user."""
    request, session = variables("request", "session")
    return Sync(
        name=f"{name}AuthError",
        when=[_request(path, request, session=session)],
        where=[Absent("Sessioning", "_getUser", {"session": session})],
        then=[_respond(request, error=INVALID_SESSION)],
    )

def authenticated_action(concept: str, action: str, fields: Sequence[str] = (), *, owner: Optional[str] = "owner",
                         result: Sequence[str] = (), status: Optional[str] = None,
                         also: Sequence[ThenAction] = (), path: Optional[str] = None) -> List[Sync]:
    """Request, auth-error, response and error-response syncs for one session-gated action.

    ``fields`` are copied from the request into the action; the session's user
    is passed as ``owner`` unless ``owner`` is None. ``result`` names action
    outputs echoed in the response and ``also`` lists extra dispatches that
    run with the action (they may reference ``?user`` and the field variables).
    """
    path = path or f"/{concept}/{action}"
    name = f"{concept}{_title(action)}"
    request, session, user, error = variables("request", "session", "user", "error")
    field_vars: Dict[str, Var] = {f: Var(f) for f in fields}
    inputs: Dict[str, Any] = dict(field_vars)
    if owner:
        inputs[owner] = user
    result_vars: Dict[str, Var] = {r: Var(r) for r in result}
    reply: Dict[str, Any] = dict(result_vars)
    if status is not None:
        reply["status"] = status
    return [
        Sync(
            name=f"{name}Request",
            when=[_request(path, request, session=session, **field_vars)],
            where=[_session_user(session, user)],
            then=[ThenAction(concept, action, inputs), *also],
        ),
        auth_error(name, path),
        Sync(
            name=f"{name}Response",
            when=[_request(path, request), WhenPattern(concept, action, {}, result_vars)],
            then=[_respond(request, **reply)],
        ),
        Sync(
            name=f"{name}ResponseError",
            when=[_request(path, request), WhenPattern(concept, action, {}, {"error": error})],
            then=[_respond(request, error=error)],
        ),
    ]

def authenticated_query(concept: str, query: str, fields: Sequence[str] = (), *, owner: str = "owner",
                        result: Sequence[str] = ()) -> List[Sync]:
    """Request, auth-error and query-error syncs for one session-gated query."""
    path = f"/{concept}/{query}"
    name = f"{concept}{_title(query)}"
    request, session, user, error = variables("request", "session", "user", "error")
    field_vars: Dict[str, Var] = {f: Var(f) for f in fields}
    inputs: Dict[str, Any] = {owner: user, **field_vars}
    result_vars: Dict[str, Var] = {r: Var(r) for r in result}
    when = [_request(path, request, session=session, **field_vars)]
    return [
        Sync(
            name=f"{name}Request",
            when=when,
            where=[_session_user(session, user), Query(concept, query, inputs, result_vars)],
            then=[_respond(request, **result_vars)],
        ),
        auth_error(name, path),
        Sync(
            name=f"{name}Error",
            when=when,
            where=[_session_user(session, user), Query(concept, query, inputs, {"error": error})],
            then=[_respond(request, error=error)],
        ),
    ]

def auth_syncs() -> List[Sync]:
    request, username, password, user, session, error = variables("request", "username", "password", "user", "session", "error")
    register, login, logout = "/PasswordAuthentication/register", "/PasswordAuthentication/authenticate", "/Sessioning/delete"
    return [
        Sync(
            name="RegisterRequest",
            when=[_request(register, request, username=username, password=password)],
            then=[ThenAction("PasswordAuthentication", "register", {"username": username, "password": password})],
        ),
        Sync(
            name="RegisterResponse",
            when=[_request(register, request), WhenPattern("PasswordAuthentication", "register", {}, {"user": user})],
            then=[_respond(request, user=user)],
        ),
        Sync(
            name="RegisterResponseError",
            when=[_request(register, request), WhenPattern("PasswordAuthentication", "register", {}, {"error": error})],
            then=[_respond(request, error=error)],
        ),
        Sync(
            name="LoginRequest",
            when=[_request(login, request, username=username, password=password)],
            then=[ThenAction("PasswordAuthentication", "authenticate", {"username": username, "password": password})],
        ),
        Sync(
            name="LoginCreateSession",
            when=[_request(login, request), WhenPattern("PasswordAuthentication", "authenticate", {}, {"user": user})],
            then=[ThenAction("Sessioning", "create", {"user": user})],
        ),
        Sync(
            name="LoginResponse",
            when=[_request(login, request), WhenPattern("Sessioning", "create", {"user": user}, {"session": session})],
            then=[_respond(request, session=session, user=user)],
        ),
        Sync(
            name="LoginResponseError",
            when=[_request(login, request), WhenPattern("PasswordAuthentication", "authenticate", {}, {"error": error})],
            then=[_respond(request, error=error)],
        ),
        Sync(
            name="LogoutRequest",
            when=[_request(logout, request, session=session)],
            then=[ThenAction("Sessioning", "delete", {"session": session})],
        ),
        Sync(
            name="LogoutResponse",
            when=[_request(logout, request), WhenPattern("Sessioning", "delete", {}, {})],
            then=[_respond(request, status="logged out")],
        ),
        Sync(
            name="LogoutResponseError",
            when=[_request(logout, request), WhenPattern("Sessioning", "delete", {}, {"error": error})],
            then=[_respond(request, error=error)],
        ),
    ]

def library_syncs() -> List[Sync]:
    user, file, owner = variables("user", "file", "owner")
    syncs: List[Sync] = []
    syncs += authenticated_action("Library", "create", result=["library"])
    syncs += authenticated_action("Library", "delete", status="deleted")
    syncs += authenticated_action("Library", "createFile", result=["id"])
    syncs += authenticated_action("Library", "addFile", ["items"], result=["id"])
    syncs += authenticated_action("Library", "modifyFile", ["file", "items"], result=["id"])
    syncs += authenticated_action("Library", "deleteFile", ["file"], status="deleted",
                                  also=[ThenAction("FileTracker", "deleteTracking", {"owner": user, "file": file})])
    syncs += authenticated_action("Library", "addItemToFile", ["file", "item"], status="item added")
    syncs += authenticated_action("Library", "modifyItemInFile", ["file", "index", "newItem"], status="item modified")
    syncs += authenticated_action("Library", "removeItemFromFile", ["file", "index"], status="item removed")
    syncs += authenticated_action("Library", "setImageToFile", ["file", "image"], status="image_set")
    syncs += authenticated_action("Library", "clearImageFromFile", ["file"], status="image_cleared")
    syncs += authenticated_query("Library", "_getAllFiles", result=["files"])
    syncs += authenticated_query("Library", "_getFileString", ["file"], result=["fileString"])
    # A deleted library takes its owner's reading positions with it, one dispatch per tracked file
    syncs.append(Sync(
        name="CascadeTrackingDeletion",
        when=[WhenPattern("Library", "delete", {"owner": owner}, {})],
        where=[Query("FileTracker", "_getTrackedFiles", {"owner": owner}, {"file": file})],
        then=[ThenAction("FileTracker", "deleteTracking", {"owner": owner, "file": file})],
    ))
    return syncs

def filetracker_syncs() -> List[Sync]:
    syncs: List[Sync] = []
    syncs += authenticated_action("FileTracker", "startTracking", ["file", "maxIndex"], result=["id"], status="started file tracking")
    syncs += authenticated_action("FileTracker", "deleteTracking", ["file"], status="deleted tracking")
    syncs += authenticated_action("FileTracker", "jumpTo", ["file", "index"], status="jumpedTo")
    syncs += authenticated_action("FileTracker", "next", ["file"], status="next in pattern")
    syncs += authenticated_action("FileTracker", "back", ["file"], status="back in pattern")
    syncs += authenticated_action("FileTracker", "setVisibility", ["file", "visible"], status="set visibility")
    syncs += authenticated_query("FileTracker", "_getCurrentItem", ["file"], result=["index"])
    syncs += authenticated_query("FileTracker", "_getVisibility", ["file"], result=["isVisible"])
    return syncs

def dictionary_syncs() -> List[Sync]:
    syncs: List[Sync] = []
    syncs += authenticated_action("Dictionary", "addTerm", ["type", "language1", "language2"], owner=None, result=["id"])
    syncs += authenticated_action("Dictionary", "deleteTerm", ["type", "language1", "language2"], owner=None, status="deleted")
    return syncs

def make_syncs() -> List[Sync]:
    syncs: List[Sync] = []
    syncs += auth_syncs()
    syncs += library_syncs()
    syncs += filetracker_syncs()
    syncs += dictionary_syncs()
    return syncs
