"""In-memory FHIR server for tests.

Serves the subset of the FHIR REST API the sync layer uses (read, create,
update, delete and the two searches) through ``httpx.MockTransport``, so the
real ``FHIRClient`` runs unchanged against it. Failures can be injected per
method and resource type.
"""

import json
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

BASE_URL = "http://fhir.test/fhir"


@dataclass
class InjectedFailure:
    """A canned response for matching requests.

    ``body`` replaces the OperationOutcome built from ``diagnostics``.
    """

    status_code: int
    diagnostics: str
    remaining: Optional[int] = None
    body: Optional[Any] = None


def operation_outcome(diagnostics: str, code: str = "processing") -> Dict[str, Any]:
    """OperationOutcome body with a single error issue."""
    return {
        "resourceType": "OperationOutcome",
        "issue": [{"severity": "error", "code": code, "diagnostics": diagnostics}],
    }


class InMemoryFHIRServer:
    """Stores Patient and Appointment resources in dictionaries."""

    def __init__(self) -> None:
        self.resources: Dict[str, Dict[str, Dict[str, Any]]] = {
            "Patient": {},
            "Appointment": {},
        }
        self.deleted: Dict[str, set] = {"Patient": set(), "Appointment": set()}
        self.requests: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], InjectedFailure] = {}
        self.rejected_statuses: set = set()

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    # Test helpers

    def seed(self, resource_type: str, resource: Dict[str, Any]) -> str:
        """Store a resource directly, bypassing the API; returns its id."""
        resource_id = resource.get("id") or uuid.uuid4().hex[:12]
        self.resources[resource_type][resource_id] = {
            **resource,
            "resourceType": resource_type,
            "id": resource_id,
        }
        return resource_id

    def fail(
        self,
        method: str,
        resource_type: str,
        status_code: int = 500,
        diagnostics: str = "Injected failure",
        times: Optional[int] = None,
    ) -> None:
        """Answer ``method`` requests on ``resource_type`` with an error."""
        self.failures[(method.upper(), resource_type)] = InjectedFailure(
            status_code, diagnostics, times
        )

    def reply(
        self,
        method: str,
        resource_type: str,
        body: Any,
        status_code: int = 200,
        times: Optional[int] = None,
    ) -> None:
        """Answer ``method`` requests on ``resource_type`` with a raw JSON body."""
        self.failures[(method.upper(), resource_type)] = InjectedFailure(
            status_code, "", times, body
        )

    def writes(self, resource_type: Optional[str] = None) -> List[Tuple[str, str]]:
        """Recorded POST, PUT and DELETE requests."""
        return [
            (method, path)
            for method, path in self.requests
            if method in ("POST", "PUT", "DELETE")
            and (resource_type is None or path.startswith(resource_type))
        ]

    # Request handling

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.split("/fhir/", 1)[-1].strip("/")
        parts = path.split("/")
        resource_type = parts[0]
        resource_id = parts[1] if len(parts) > 1 else None
        method = request.method.upper()
        self.requests.append((method, path))

        if resource_type not in self.resources:
            return self._error(404, f"Unknown resource type {resource_type}")

        failure = self._take_failure(method, resource_type)
        if failure is not None and failure.body is not None:
            return httpx.Response(failure.status_code, json=failure.body)
        if failure is not None:
            return self._error(failure.status_code, failure.diagnostics)

        if method == "GET" and resource_id is None:
            return self._search(resource_type, dict(request.url.params))
        if method == "GET":
            return self._read(resource_type, resource_id or "")
        if method == "POST":
            return self._create(resource_type, json.loads(request.content))
        if method == "PUT":
            return self._update(resource_type, resource_id or "", json.loads(request.content))
        if method == "DELETE":
            return self._delete(resource_type, resource_id or "")
        return self._error(405, f"Method {method} not allowed")

    def _take_failure(self, method: str, resource_type: str) -> Optional[InjectedFailure]:
        failure = self.failures.get((method, resource_type))
        if failure is None:
            return None
        if failure.remaining is not None:
            failure.remaining -= 1
            if failure.remaining <= 0:
                del self.failures[(method, resource_type)]
        return failure

    def _error(self, status_code: int, diagnostics: str) -> httpx.Response:
        return httpx.Response(status_code, json=operation_outcome(diagnostics))

    def _read(self, resource_type: str, resource_id: str) -> httpx.Response:
        if resource_id in self.deleted[resource_type]:
            return self._error(410, f"{resource_type}/{resource_id} has been deleted")
        resource = self.resources[resource_type].get(resource_id)
        if resource is None:
            return self._error(404, f"{resource_type}/{resource_id} not found")
        return httpx.Response(200, json=resource)

    def _validate(self, resource_type: str, body: Dict[str, Any]) -> Optional[str]:
        if body.get("resourceType") != resource_type:
            return f"Expected a {resource_type} resource"
        if resource_type == "Appointment" and body.get("status") in self.rejected_statuses:
            return f"Unknown appointment status '{body.get('status')}'"
        return None

    def _create(self, resource_type: str, body: Dict[str, Any]) -> httpx.Response:
        problem = self._validate(resource_type, body)
        if problem:
            return self._error(400, problem)
        resource_id = uuid.uuid4().hex[:12]
        stored = {**body, "id": resource_id, "meta": {"versionId": "1"}}
        self.resources[resource_type][resource_id] = stored
        return httpx.Response(
            201,
            json=stored,
            headers={"Location": f"{BASE_URL}/{resource_type}/{resource_id}/_history/1"},
        )

    def _update(
        self, resource_type: str, resource_id: str, body: Dict[str, Any]
    ) -> httpx.Response:
        if resource_id not in self.resources[resource_type]:
            return self._error(404, f"{resource_type}/{resource_id} not found")
        problem = self._validate(resource_type, body)
        if problem:
            return self._error(400, problem)
        version = int(
            self.resources[resource_type][resource_id].get("meta", {}).get("versionId", "1")
        )
        stored = {**body, "id": resource_id, "meta": {"versionId": str(version + 1)}}
        self.resources[resource_type][resource_id] = stored
        return httpx.Response(200, json=stored)

    def _delete(self, resource_type: str, resource_id: str) -> httpx.Response:
        if self.resources[resource_type].pop(resource_id, None) is None:
            return self._error(404, f"{resource_type}/{resource_id} not found")
        self.deleted[resource_type].add(resource_id)
        return httpx.Response(204)

    def _search(self, resource_type: str, params: Dict[str, str]) -> httpx.Response:
        matches = list(self.resources[resource_type].values())
        if "telecom" in params:
            matches = [
                r
                for r in matches
                if any(t.get("value") == params["telecom"] for t in r.get("telecom") or [])
            ]
        if "actor" in params:
            matches = [
                r
                for r in matches
                if any(
                    (p.get("actor") or {}).get("reference") == params["actor"]
                    for p in r.get("participant") or []
                )
            ]
        bundle = {
            "resourceType": "Bundle",
            "type": "searchset",
            "total": len(matches),
            "entry": [
                {"fullUrl": f"{BASE_URL}/{resource_type}/{r['id']}", "resource": r}
                for r in matches
            ],
        }
        return httpx.Response(200, json=bundle)
