import redis
from fastapi import FastAPI
from fastapi.testclient import TestClient

from voucher_market.core.rate_limiter import InMemoryRateLimiterService, RedisRateLimiterService, build_rate_limiter
from voucher_market.middleware.rate_limit import RateLimitMiddleware, resolve_scope


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FakePipeline:
    def __init__(self, client) -> None:
        self.client = client
        self.calls = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return queue

    def execute(self):
        return [getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self.calls]


class FakeRedis:
    def __init__(self) -> None:
        self.counters = {}
        self.ttls = {}

    def pipeline(self):
        return FakePipeline(self)

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.counters:
            return None
        self.counters[key] = value
        self.ttls[key] = ex
        return True

    def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def ttl(self, key):
        return self.ttls.get(key, -1)


class BrokenPipeline(FakePipeline):
    def execute(self):
        raise redis.ConnectionError("connection refused")


class BrokenRedis:
    def pipeline(self):
        return BrokenPipeline(self)


def test_in_memory_limiter_blocks_after_limit_and_recovers():
    clock = FakeClock()
    limiter = InMemoryRateLimiterService(policies={"general": (2, 60)}, clock=clock)

    first = limiter.check(client_id="1.2.3.4")
    second = limiter.check(client_id="1.2.3.4")
    blocked = limiter.check(client_id="1.2.3.4")
    clock.now += 61
    recovered = limiter.check(client_id="1.2.3.4")

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert blocked.allowed is False
    assert blocked.retry_after_seconds == 60
    assert recovered.allowed is True


def test_in_memory_limiter_keeps_scopes_and_clients_apart():
    limiter = InMemoryRateLimiterService(policies={"general": (5, 60), "auth": (1, 60)}, clock=FakeClock())

    assert limiter.check(client_id="a", scope="auth").allowed is True
    assert limiter.check(client_id="a", scope="auth").allowed is False
    assert limiter.check(client_id="b", scope="auth").allowed is True
    assert limiter.check(client_id="a", scope="general").allowed is True


def test_unknown_scope_falls_back_to_general_policy():
    limiter = InMemoryRateLimiterService(policies={"general": (3, 60)}, clock=FakeClock())

    decision = limiter.check(client_id="a", scope="reports")

    assert decision.limit == 3


def test_redis_limiter_counts_and_sets_window():
    client = FakeRedis()
    limiter = RedisRateLimiterService(client, policies={"general": (2, 600), "payment": (1, 600)})

    assert limiter.check(client_id="a", scope="payment").allowed is True
    blocked = limiter.check(client_id="a", scope="payment")

    assert blocked.allowed is False
    assert blocked.retry_after_seconds == 600
    assert client.ttls == {"rate_limit:payment:a": 600}


def test_redis_limiter_allows_when_backend_is_down():
    limiter = RedisRateLimiterService(BrokenRedis(), policies={"general": (1, 60)})

    decisions = [limiter.check(client_id="a") for _ in range(3)]

    assert all(decision.allowed for decision in decisions)


def test_build_rate_limiter_without_redis_url_is_in_memory():
    assert isinstance(build_rate_limiter(""), InMemoryRateLimiterService)


def test_resolve_scope():
    assert resolve_scope("/auth/login") == "auth"
    assert resolve_scope("/auth/register") == "auth"
    assert resolve_scope("/api/payments/payfast") == "payment"
    assert resolve_scope("/api/deals") == "general"


def _limited_app(policies):
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, rate_limiter=InMemoryRateLimiterService(policies=policies))

    @app.post("/auth/login")
    def login():
        return {"ok": True}

    @app.get("/api/deals")
    def deals():
        return {"ok": True}

    @app.get("/health")
    def health():
        return {"ok": True}

    return TestClient(app)


def test_middleware_returns_429_with_headers():
    client = _limited_app({"general": (100, 60), "auth": (2, 900)})

    responses = [client.post("/auth/login") for _ in range(3)]

    assert [response.status_code for response in responses] == [200, 200, 429]
    assert responses[0].headers["X-RateLimit-Limit"] == "2"
    assert responses[0].headers["X-RateLimit-Remaining"] == "1"
    blocked = responses[-1]
    assert blocked.json() == {"detail": "Too many requests, please try again later", "code": "RATE_LIMITED"}
    assert int(blocked.headers["Retry-After"]) > 0
    # other scopes are unaffected
    assert client.get("/api/deals").status_code == 200


def test_health_is_never_limited():
    client = _limited_app({"general": (1, 60)})

    assert all(client.get("/health").status_code == 200 for _ in range(5))


def test_in_memory_limiter_forgets_idle_clients():
    clock = FakeClock()
    limiter = InMemoryRateLimiterService(policies={"general": (5, 60), "auth": (5, 900)}, clock=clock)
    limiter.check(client_id="gone")
    limiter.check(client_id="slow", scope="auth")

    clock.now += 61
    limiter.check(client_id="fresh")

    assert ("general", "gone") not in limiter._store
    assert ("auth", "slow") in limiter._store
    assert ("general", "fresh") in limiter._store


def test_redis_limiter_sets_expiry_with_the_first_increment():
    pipelines = []

    class RecordingRedis(FakeRedis):
        def pipeline(self):
            pipelines.append(FakePipeline(self))
            return pipelines[-1]

    client = RecordingRedis()
    limiter = RedisRateLimiterService(client, policies={"general": (5, 60)})

    limiter.check(client_id="a")
    limiter.check(client_id="a")

    assert [name for name, _, _ in pipelines[0].calls] == ["set", "incr", "ttl"]
    assert pipelines[0].calls[0][2] == {"ex": 60, "nx": True}
    assert client.counters["rate_limit:general:a"] == 2
    assert client.ttls["rate_limit:general:a"] == 60
