from __future__ import annotations
from typing import Any, Dict, List, Optional
from uuid import uuid4
import copy, json, logging, threading, time
from werkzeug.security import check_password_hash, generate_password_hash
from engine import Concept

logger = logging.getLogger(__name__)

# ====== Concepts ======
# Each concept owns its state outright and guards it with its own lock; the
# engine assumes every action is individually safe under concurrent flows.

def fresh_id() -> str:
    return str(uuid4())

def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)

# 1) Requesting: transport-facing request/response correlation
class Requesting(Concept):
    def __init__(self, name: str = "Requesting"):
        super().__init__(name)
        self._lock = threading.Lock()
        self._requests: Dict[str, Dict[str, Any]] = {}
        self._responses: Dict[str, Dict[str, Any]] = {}
    def request(self, path: str, **fields: Any) -> Dict[str, Any]:
        rid = fresh_id()
        with self._lock:
            self._requests[rid] = {"path": path, "fields": fields, "ts": time.time()}
        return {"request": rid}
    def respond(self, request: str, **fields: Any) -> Dict[str, Any]:
        with self._lock:
            if request not in self._requests:
                return {"error": f"Unknown request {request}"}
            if request in self._responses:
                logger.warning("[%s] duplicate response for request %s", self.name, request)
                return {"error": f"Request {request} was already responded to"}
            self._responses[request] = fields
        return {"request": request}
    def take_response(self, request: str) -> Optional[Dict[str, Any]]:
        """Hand the stored response to the transport and forget the request."""
        with self._lock:
            self._requests.pop(request, None)
            return self._responses.pop(request, None)
    def _getResponse(self, request: str) -> List[Dict[str, Any]]:
        with self._lock:
            if request not in self._responses:
                return [{"error": f"No response for request {request}"}]
            return [{"response": dict(self._responses[request])}]

# 2) Sessioning: session -> user
class Sessioning(Concept):
    def __init__(self, name: str = "Sessioning"):
        super().__init__(name)
        self._lock = threading.Lock()
        self._sessions: Dict[str, Dict[str, Any]] = {}
    def create(self, user: str) -> Dict[str, Any]:
        sid = fresh_id()
        with self._lock:
            self._sessions[sid] = {"user": user, "ts": time.time()}
        return {"session": sid}
    def delete(self, session: str) -> Dict[str, Any]:
        with self._lock:
            if self._sessions.pop(session, None) is None:
                return {"error": f"Session with id {session} not found"}
        return {}
    def _getUser(self, session: str) -> List[Dict[str, Any]]:
        with self._lock:
            rec = self._sessions.get(session)
        if rec is None:
            return [{"error": f"Session with id {session} not found"}]
        return [{"user": rec["user"]}]

# 3) PasswordAuthentication: username/password -> user
class PasswordAuthentication(Concept):
    def __init__(self, name: str = "PasswordAuthentication"):
        super().__init__(name)
        self._lock = threading.Lock()
        self._users: Dict[str, Dict[str, Any]] = {}
        self._by_username: Dict[str, str] = {}
    def register(self, username: str, password: str) -> Dict[str, Any]:
        if not isinstance(username, str) or not username.strip():
            return {"error": "Username cannot be empty."}
        if not isinstance(password, str):
            return {"error": "Password must be a string."}
        with self._lock:
            if username in self._by_username:
                return {"error": "Username already exists."}
            uid = fresh_id()
            self._users[uid] = {"username": username, "password": generate_password_hash(password)}
            self._by_username[username] = uid
        return {"user": uid}
    def authenticate(self, username: str, password: str) -> Dict[str, Any]:
        with self._lock:
            uid = self._by_username.get(username)
            rec = self._users.get(uid) if uid else None
        if rec is None:
            return {"error": f"Invalid username: there is no user with username {username}"}
        if not isinstance(password, str) or not check_password_hash(rec["password"], password):
            return {"error": "Password does not match!"}
        return {"user": uid}
    def _getUserByUsername(self, username: str) -> List[Dict[str, Any]]:
        with self._lock:
            uid = self._by_username.get(username)
        if uid is None:
            return [{"error": f"Invalid username: there is no user with username {username}"}]
        return [{"user": uid}]
    def _getUsername(self, user: str) -> List[Dict[str, Any]]:
        with self._lock:
            rec = self._users.get(user)
        if rec is None:
            return [{"error": f"No user with id {user}"}]
        return [{"username": rec["username"]}]

# 4) Library: per-owner collection of files, each an ordered list of string items
class Library(Concept):
    def __init__(self, name: str = "Library"):
        super().__init__(name)
        self._lock = threading.Lock()
        self._libraries: Dict[str, Dict[str, Any]] = {}  # owner -> library doc
    def _file(self, owner: str, file: str) -> Any:
        lib = self._libraries.get(owner)
        if lib is None:
            return {"error": f"No library found for owner {owner}."}
        doc = lib["files"].get(file)
        if doc is None:
            return {"error": f"File {file} not found in the library of {owner}."}
        return doc
    def create(self, owner: str) -> Dict[str, Any]:
        with self._lock:
            if owner in self._libraries:
                return {"error": f"A library already exists for owner {owner}."}
            lid = fresh_id()
            self._libraries[owner] = {"_id": lid, "owner": owner, "files": {}}
        return {"library": lid}
    def delete(self, owner: str) -> Dict[str, Any]:
        with self._lock:
            if self._libraries.pop(owner, None) is None:
                return {"error": f"No library found for owner {owner}."}
        return {}
    def createFile(self, owner: str) -> Dict[str, Any]:
        with self._lock:
            lib = self._libraries.get(owner)
            if lib is None:
                return {"error": f"No library found for owner {owner}."}
            fid = fresh_id()
            lib["files"][fid] = {"_id": fid, "items": [], "image": None, "dateAdded": time.time()}
        return {"id": fid}
    def addFile(self, owner: str, items: List[str]) -> Dict[str, Any]:
        if not isinstance(items, list) or not all(isinstance(i, str) for i in items):
            return {"error": "items must be a list of strings."}
        with self._lock:
            lib = self._libraries.get(owner)
            if lib is None:
                return {"error": f"No library found for owner {owner}."}
            if any(doc["items"] == items for doc in lib["files"].values()):
                return {"error": "An identical file already exists in this library."}
            fid = fresh_id()
            lib["files"][fid] = {"_id": fid, "items": list(items), "image": None, "dateAdded": time.time()}
        return {"id": fid}
    def modifyFile(self, owner: str, file: str, items: List[str]) -> Dict[str, Any]:
        if not isinstance(items, list) or not all(isinstance(i, str) for i in items):
            return {"error": "items must be a list of strings."}
        with self._lock:
            doc = self._file(owner, file)
            if "error" in doc:
                return doc
            doc["items"] = list(items)
        return {"id": file}
    def deleteFile(self, owner: str, file: str) -> Dict[str, Any]:
        with self._lock:
            doc = self._file(owner, file)
            if "error" in doc:
                return doc
            del self._libraries[owner]["files"][file]
        return {}
    def addItemToFile(self, owner: str, file: str, item: str) -> Dict[str, Any]:
        if not isinstance(item, str):
            return {"error": "item must be a string."}
        with self._lock:
            doc = self._file(owner, file)
            if "error" in doc:
                return doc
            doc["items"].append(item)
        return {}
    def modifyItemInFile(self, owner: str, file: str, index: int, newItem: str) -> Dict[str, Any]:
        if not isinstance(newItem, str):
            return {"error": "newItem must be a string."}
        with self._lock:
            doc = self._file(owner, file)
            if "error" in doc:
                return doc
            if not _is_int(index) or not 0 <= index < len(doc["items"]):
                return {"error": f"Index {index} is out of bounds for file {file}."}
            doc["items"][index] = newItem
        return {}
    def removeItemFromFile(self, owner: str, file: str, index: int) -> Dict[str, Any]:
        with self._lock:
            doc = self._file(owner, file)
            if "error" in doc:
                return doc
            if not _is_int(index) or not 0 <= index < len(doc["items"]):
                return {"error": f"Index {index} is out of bounds for file {file}."}
            del doc["items"][index]
        return {}
    def setImageToFile(self, owner: str, file: str, image: str) -> Dict[str, Any]:
        if not isinstance(image, str) or not image:
            return {"error": "image must be a non-empty string."}
        with self._lock:
            doc = self._file(owner, file)
            if "error" in doc:
                return doc
            doc["image"] = image
        return {}
    def clearImageFromFile(self, owner: str, file: str) -> Dict[str, Any]:
        with self._lock:
            doc = self._file(owner, file)
            if "error" in doc:
                return doc
            doc["image"] = None
        return {}
    def _getAllFiles(self, owner: str) -> List[Dict[str, Any]]:
        with self._lock:
            lib = self._libraries.get(owner)
            if lib is None:
                return [{"error": f"No library found for owner {owner}."}]
            files = copy.deepcopy(list(lib["files"].values()))
        return [{"files": files}]
    def _getFileString(self, owner: str, file: str) -> List[Dict[str, Any]]:
        with self._lock:
            doc = self._file(owner, file)
            if "error" in doc:
                return [doc]
            items = list(doc["items"])
        return [{"fileString": json.dumps(items)}]

# 5) FileTracker: a user's position inside each file they follow
class FileTracker(Concept):
    def __init__(self, name: str = "FileTracker"):
        super().__init__(name)
        self._lock = threading.Lock()
        self._tracked: Dict[tuple, Dict[str, Any]] = {}  # (owner, file) -> tracked file doc
    @staticmethod
    def _missing(owner: str, file: str) -> Dict[str, Any]:
        return {"error": f"No tracking found for owner '{owner}' and file '{file}'."}
    def startTracking(self, owner: str, file: str, maxIndex: int) -> Dict[str, Any]:
        if not _is_int(maxIndex) or maxIndex <= 0:
            return {"error": f"Invalid maxIndex: {maxIndex}. Must be a positive integer."}
        with self._lock:
            if (owner, file) in self._tracked:
                return {"error": f"Tracking already exists for owner '{owner}' and file '{file}'."}
            tid = fresh_id()
            self._tracked[(owner, file)] = {"_id": tid, "owner": owner, "file": file,
                                            "currentIndex": 1, "maxIndex": maxIndex, "isVisible": True}
        return {"id": tid}
    def deleteTracking(self, owner: str, file: str) -> Dict[str, Any]:
        with self._lock:
            if self._tracked.pop((owner, file), None) is None:
                return self._missing(owner, file)
        return {}
    def jumpTo(self, owner: str, file: str, index: int) -> Dict[str, Any]:
        with self._lock:
            doc = self._tracked.get((owner, file))
            if doc is None:
                return self._missing(owner, file)
            if not _is_int(index) or not 0 <= index <= doc["maxIndex"]:
                return {"error": f"Index '{index}' is out of bounds [0, {doc['maxIndex']}] or not an integer."}
            doc["currentIndex"] = index
        return {}
    def next(self, owner: str, file: str) -> Dict[str, Any]:
        with self._lock:
            doc = self._tracked.get((owner, file))
            if doc is None:
                return self._missing(owner, file)
            if doc["currentIndex"] >= doc["maxIndex"]:
                return {"error": f"Current index {doc['currentIndex']} is already at or beyond max index {doc['maxIndex']}. Cannot move next."}
            doc["currentIndex"] += 1
        return {}
    def back(self, owner: str, file: str) -> Dict[str, Any]:
        with self._lock:
            doc = self._tracked.get((owner, file))
            if doc is None:
                return self._missing(owner, file)
            if doc["currentIndex"] <= 1:
                return {"error": f"Current index {doc['currentIndex']} is already at or below 1. Cannot move back."}
            doc["currentIndex"] -= 1
        return {}
    def setVisibility(self, owner: str, file: str, visible: bool) -> Dict[str, Any]:
        with self._lock:
            doc = self._tracked.get((owner, file))
            if doc is None:
                return self._missing(owner, file)
            if not isinstance(visible, bool):
                return {"error": f"Invalid visible value: {visible}. Must be a boolean."}
            doc["isVisible"] = visible
        return {}
    def _getCurrentItem(self, owner: str, file: str) -> List[Dict[str, Any]]:
        with self._lock:
            doc = self._tracked.get((owner, file))
            return [self._missing(owner, file)] if doc is None else [{"index": doc["currentIndex"]}]
    def _getVisibility(self, owner: str, file: str) -> List[Dict[str, Any]]:
        with self._lock:
            doc = self._tracked.get((owner, file))
            return [self._missing(owner, file)] if doc is None else [{"isVisible": doc["isVisible"]}]
    def _getTrackedFiles(self, owner: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [{"file": f} for (o, f) in self._tracked if o == owner]

# 6) Dictionary: term pairs between two languages
class Dictionary(Concept):
    TYPES = ("language", "abbreviation")
    def __init__(self, name: str = "Dictionary"):
        super().__init__(name)
        self._lock = threading.Lock()
        self._terms: Dict[str, Dict[str, Any]] = {}
    def _find(self, kind: str, **fields: str) -> Optional[Dict[str, Any]]:
        for doc in self._terms.values():
            if doc["type"] == kind and all(doc[k] == v for k, v in fields.items()):
                return doc
        return None
    def addTerm(self, type: str, language1: str, language2: str) -> Dict[str, Any]:
        kind = str(type).lower()
        if kind not in self.TYPES:
            return {"error": f'Invalid term type "{type}". Allowed: "language" | "abbreviation".'}
        language1, language2 = str(language1).lower(), str(language2).lower()
        with self._lock:
            if self._find(kind, language1=language1, language2=language2):
                return {"error": f"This term pair {language1} -> {language2} already exists."}
            tid = fresh_id()
            self._terms[tid] = {"_id": tid, "type": kind, "language1": language1, "language2": language2}
        return {"id": tid}
    def deleteTerm(self, type: str, language1: str, language2: str) -> Dict[str, Any]:
        kind = str(type).lower()
        language1, language2 = str(language1).lower(), str(language2).lower()
        with self._lock:
            doc = self._find(kind, language1=language1, language2=language2)
            if doc is None:
                return {"error": f'Term pair with type "{type}", "{language1}" -> "{language2}" not found.'}
            del self._terms[doc["_id"]]
        return {}
    def translateTermFromL1(self, type: str, language1: str) -> Dict[str, Any]:
        language1 = str(language1).lower()
        with self._lock:
            doc = self._find(str(type).lower(), language1=language1)
        if doc is None:
            return {"error": f'Translation for type "{type}", "{language1}" not found.'}
        return {"language2": doc["language2"]}
    def translateTermFromL2(self, type: str, language2: str) -> Dict[str, Any]:
        language2 = str(language2).lower()
        with self._lock:
            doc = self._find(str(type).lower(), language2=language2)
        if doc is None:
            return {"error": f'Translation for type "{type}", "{language2}" not found.'}
        return {"language1": doc["language1"]}
