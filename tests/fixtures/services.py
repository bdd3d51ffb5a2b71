"""Canned HTTP services for workflow steps, served through httpx.MockTransport."""

import json
from collections import defaultdict

import httpx


class FakeServices:
    """Routes requests to canned responses and records what was sent."""

    def __init__(self):
        self.routes = {}
        self.calls = defaultdict(list)

    def add(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        body = json.loads(request.content) if request.content else None
        self.calls[key].append(body)
        responses = self.routes.get(key)
        if responses is None:
            return httpx.Response(404, json={"error": "no route"})
        # the last canned response repeats
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if callable(response):
            response = response(request)
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)
