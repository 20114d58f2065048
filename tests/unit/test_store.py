"""
Unit tests for the document store boundary: query models, the in-memory
store, one-shot fetch retries, Firestore error classification and listener
closure.
"""

import threading
from datetime import timedelta

import pytest
from google.api_core import exceptions as gexc
from pydantic import ValidationError

from hostmetrics.models import FilterOp, Query, QueryErrorKind, QueryFilter, RawDocument, eq, gte, in_, lte
from hostmetrics.store import InMemoryDocumentStore, QueryError, RetryPolicy, get_document_store
from hostmetrics.store.firestore_store import FirestoreDocumentStore, classify_error
from tests.conftest import NOW, make_doc, rsvp_data, sale_data


class TestRawDocument:
    def test_sub_collection_paths(self):
        doc = make_doc("parties/p1/rsvps/r9", {})
        assert doc.collection_path == "parties/p1/rsvps"
        assert doc.collection_id == "rsvps"
        assert doc.parent_path == "parties/p1"
        assert doc.parent_id == "p1"

    def test_top_level_has_no_parent(self):
        doc = make_doc("parties/p1", {})
        assert doc.collection_id == "parties"
        assert doc.parent_path is None
        assert doc.parent_id is None


class TestQuery:
    def test_rejects_document_path(self):
        with pytest.raises(ValidationError):
            Query(collection="parties/p1")

    def test_rejects_more_than_three_filters(self):
        with pytest.raises(ValidationError):
            Query(
                collection="parties",
                filters=(eq("a", 1), eq("b", 2), eq("c", 3), eq("d", 4)),
            )

    def test_group_query_takes_collection_id(self):
        with pytest.raises(ValidationError):
            Query(collection="parties/p1/rsvps", group=True)

    def test_in_filter_bounds(self):
        assert in_("status", ["a", "b"]).value == ("a", "b")
        with pytest.raises(ValidationError):
            in_("status", [])
        with pytest.raises(ValidationError):
            in_("status", [str(i) for i in range(31)])
        with pytest.raises(ValidationError):
            QueryFilter(field="status", op=FilterOp.IN, value="confirmed")

    def test_composite_index_detection(self):
        assert not Query(collection="parties", filters=(eq("hostId", "h"),)).needs_composite_index
        assert Query(
            collection="parties", filters=(eq("hostId", "h"), gte("startDate", NOW))
        ).needs_composite_index
        assert Query(collection="rsvps", group=True, filters=(eq("hostId", "h"),)).needs_composite_index
        # Range on both ends of one field is still a single-field query
        assert not Query(
            collection="parties", filters=(gte("startDate", NOW), lte("startDate", NOW))
        ).needs_composite_index

    def test_group_matches_any_parent(self):
        query = Query(collection="rsvps", group=True, filters=(eq("hostId", "host_1"),))
        assert query.matches(make_doc("parties/p1/rsvps/r1", rsvp_data()))
        assert query.matches(make_doc("parties/p2/rsvps/r2", rsvp_data()))
        assert not query.matches(make_doc("parties/p2/rsvps/r3", rsvp_data(host_id="other")))
        assert not query.matches(make_doc("parties/p2/ticketSales/s1", sale_data()))

    def test_range_filters(self):
        query = Query(collection="ticketSales", filters=(gte("purchaseDate", NOW),))
        assert query.matches(make_doc("ticketSales/a", sale_data(purchase_date=NOW)))
        assert not query.matches(
            make_doc("ticketSales/b", sale_data(purchase_date=NOW - timedelta(seconds=1)))
        )

    def test_mismatched_types_never_match(self):
        query = Query(collection="ticketSales", filters=(gte("purchaseDate", NOW),))
        assert not query.matches(make_doc("ticketSales/a", {"purchaseDate": "yesterday"}))
        assert not query.matches(make_doc("ticketSales/b", {"purchaseDate": None}))
        assert not query.matches(make_doc("ticketSales/c", {}))

    def test_describe(self):
        query = Query(collection="rsvps", group=True, filters=(eq("hostId", "h"),))
        assert query.describe() == "group:rsvps WHERE hostId == 'h'"


class TestRetryPolicy:
    def test_exponential_backoff_capped(self):
        policy = RetryPolicy(max_attempts=5, base_delay=0.5, max_delay=3.0)
        assert [policy.delay(a) for a in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    def test_should_retry(self):
        policy = RetryPolicy(max_attempts=3)
        assert [policy.should_retry(a) for a in range(3)] == [True, True, False]

    def test_from_settings(self, test_settings):
        policy = RetryPolicy.from_settings(test_settings)
        assert policy.max_attempts == 3
        assert policy.base_delay == 0.0


class TestInMemoryDocumentStore:
    def test_subscribe_delivers_full_set_on_every_change(self, memory_store):
        deliveries = []
        query = Query(collection="rsvps", group=True)
        memory_store.put("parties/p1/rsvps/r1", rsvp_data())

        subscription = memory_store.subscribe(
            query, lambda docs: deliveries.append([d.id for d in docs]), pytest.fail
        )
        memory_store.put("parties/p2/rsvps/r2", rsvp_data())
        memory_store.put("parties/p2/ticketSales/s1", sale_data())
        memory_store.delete("parties/p1/rsvps/r1")

        assert deliveries == [["r1"], ["r1", "r2"], ["r2"]]
        assert memory_store.subscriber_count == 1
        subscription.cancel()
        assert memory_store.subscriber_count == 0

    def test_update_leaving_the_result_set_is_delivered(self, memory_store):
        deliveries = []
        query = Query(collection="parties", filters=(eq("hostId", "host_1"),))
        memory_store.put("parties/p1", {"hostId": "host_1"})
        memory_store.subscribe(query, lambda docs: deliveries.append(len(docs)), pytest.fail)

        memory_store.put("parties/p1", {"hostId": "host_2"})

        assert deliveries == [1, 0]

    def test_no_callbacks_after_cancel(self, memory_store):
        deliveries = []
        subscription = memory_store.subscribe(
            Query(collection="parties"), deliveries.append, pytest.fail
        )
        subscription.cancel()
        memory_store.put("parties/p1", {})
        assert len(deliveries) == 1

    def test_fetched_at_stamped_by_clock(self, memory_store):
        memory_store.put("parties/p1", {})
        deliveries = []
        memory_store.subscribe(Query(collection="parties"), deliveries.append, pytest.fail)
        assert deliveries[0][0].fetched_at == NOW

    def test_rejects_document_paths(self, memory_store):
        with pytest.raises(ValueError):
            memory_store.put("parties", {})
        assert memory_store.delete("parties/missing") is False

    def test_missing_index_reported_through_on_error(self, indexed_store):
        errors = []
        query = Query(collection="rsvps", group=True, filters=(eq("hostId", "h"),))
        subscription = indexed_store.subscribe(query, pytest.fail, errors.append)

        assert [e.kind for e in errors] == [QueryErrorKind.MISSING_INDEX]
        assert subscription.active is False
        assert indexed_store.subscriber_count == 0

    def test_declared_index_accepted(self, indexed_store):
        indexed_store.declare_index("rsvps", ["hostId"], group=True)
        deliveries = []
        query = Query(collection="rsvps", group=True, filters=(eq("hostId", "h"),))
        indexed_store.subscribe(query, deliveries.append, pytest.fail)
        assert deliveries == [[]]

    def test_denied_collection(self, memory_store):
        errors = []
        memory_store.deny("rsvps")
        memory_store.subscribe(Query(collection="rsvps", group=True), pytest.fail, errors.append)
        assert errors[0].kind == QueryErrorKind.PERMISSION_DENIED

        memory_store.allow("rsvps")
        deliveries = []
        memory_store.subscribe(Query(collection="rsvps", group=True), deliveries.append, pytest.fail)
        assert deliveries == [[]]


class TestFetchOnce:
    @pytest.mark.asyncio
    async def test_returns_current_set(self, memory_store):
        memory_store.put("parties/p1", {"hostId": "h"})
        memory_store.put("parties/p2", {"hostId": "x"})
        docs = await memory_store.fetch_once(Query(collection="parties", filters=(eq("hostId", "h"),)))
        assert [d.id for d in docs] == ["p1"]
        assert all(isinstance(d, RawDocument) for d in docs)

    @pytest.mark.asyncio
    async def test_transient_failures_retried(self, memory_store):
        memory_store.inject_failure("parties", QueryErrorKind.TRANSIENT, times=2)
        memory_store.put("parties/p1", {})

        docs = await memory_store.fetch_once(Query(collection="parties"))

        assert [d.id for d in docs] == ["p1"]
        assert memory_store.fetch_count == 3

    @pytest.mark.asyncio
    async def test_transient_failures_exhausted(self, memory_store):
        memory_store.inject_failure("parties", QueryErrorKind.TRANSIENT, times=3)
        with pytest.raises(QueryError) as exc_info:
            await memory_store.fetch_once(Query(collection="parties"))
        assert exc_info.value.is_transient
        assert memory_store.fetch_count == 3

    @pytest.mark.asyncio
    async def test_permission_denied_not_retried(self, memory_store):
        memory_store.deny("parties")
        with pytest.raises(QueryError) as exc_info:
            await memory_store.fetch_once(Query(collection="parties"))
        assert exc_info.value.kind == QueryErrorKind.PERMISSION_DENIED
        assert memory_store.fetch_count == 1


class TestClassifyError:
    @pytest.mark.parametrize(
        "error,kind",
        [
            (gexc.FailedPrecondition("The query requires an index"), QueryErrorKind.MISSING_INDEX),
            (gexc.PermissionDenied("Missing or insufficient permissions"), QueryErrorKind.PERMISSION_DENIED),
            (gexc.Unauthenticated("expired token"), QueryErrorKind.PERMISSION_DENIED),
            (gexc.ServiceUnavailable("unavailable"), QueryErrorKind.TRANSIENT),
            (gexc.DeadlineExceeded("deadline"), QueryErrorKind.TRANSIENT),
            (ConnectionResetError("reset"), QueryErrorKind.TRANSIENT),
        ],
    )
    def test_mapping(self, error, kind):
        assert classify_error(error).kind == kind

    def test_query_error_passes_through(self):
        error = QueryError(QueryErrorKind.MISSING_INDEX, "x")
        assert classify_error(error) is error


class TestGetDocumentStore:
    def test_memory_backend(self, test_settings):
        store = get_document_store(test_settings)
        assert isinstance(store, InMemoryDocumentStore)
        assert store.retry_policy.max_attempts == test_settings.retry_max_attempts


class FakeWatch:
    """Stands in for the client library's listener handle."""

    def __init__(self):
        self.is_active = True
        self.close_reasons = []

    def close(self, reason=None):
        self.close_reasons.append(reason)
        self.is_active = False

    def unsubscribe(self):
        self.close()


class FakeFirestoreQuery:
    def __init__(self, client):
        self.client = client

    def where(self, filter=None):
        return self

    def limit(self, count):
        return self

    def get(self):
        return []

    def on_snapshot(self, callback):
        watch = FakeWatch()
        self.client.watches.append(watch)
        self.client.attached.set()
        return watch


class FakeFirestoreClient:
    def __init__(self):
        self.watches = []
        self.attached = threading.Event()

    def collection(self, *path):
        return FakeFirestoreQuery(self)

    def collection_group(self, collection_id):
        return FakeFirestoreQuery(self)

    def close(self):
        pass


class TestFirestoreListener:
    @pytest.fixture
    def client(self):
        return FakeFirestoreClient()

    @pytest.fixture
    def listen(self, client):
        """Subscribe through the adapter and wait for the listener to attach."""
        store = FirestoreDocumentStore(client=client, watch_poll_interval=0.01)
        errors = []
        reported = threading.Event()

        def on_error(error):
            errors.append(error)
            reported.set()

        subscription = store.subscribe(
            Query(collection="parties", filters=(eq("hostId", "h"),)),
            on_snapshot=lambda docs: None,
            on_error=on_error,
        )
        assert client.attached.wait(1.0)
        return subscription, client.watches[0], errors, reported

    def test_closed_stream_reported(self, listen):
        subscription, watch, errors, reported = listen

        # The client library closes failed streams on its own thread
        threading.Thread(
            target=watch.close, kwargs={"reason": gexc.ServiceUnavailable("stream reset")}
        ).start()

        assert reported.wait(1.0)
        assert [e.kind for e in errors] == [QueryErrorKind.TRANSIENT]
        assert subscription.active is False

    def test_inactive_listener_reported(self, listen):
        subscription, watch, errors, reported = listen

        watch.is_active = False

        assert reported.wait(1.0)
        assert [e.kind for e in errors] == [QueryErrorKind.TRANSIENT]
        assert subscription.active is False

    def test_cancel_is_not_an_error(self, listen):
        subscription, watch, errors, reported = listen

        subscription.cancel()

        assert not reported.wait(0.1)
        assert errors == []
        assert watch.is_active is False
