"""Push-based publish/subscribe primitives used to wire pipeline stages.

A :class:`Publisher` pushes items to a single :class:`Subscriber` only as fast
as the subscriber asks for them through :meth:`Subscription.request`.  Stages
are composed with :meth:`Publisher.map`, which applies a :class:`Transform` to
every item in order, one item at a time.  Iterating a publisher pulls one item
per step, so a ``for`` loop over the final stage drives the whole chain::

    outputs = IteratorPublisher(batches).map(augmenter).map(train_step)
    for output in outputs:
        ...

Breaking out of the loop cancels the subscription between items.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Generator
from typing import Generic, TypeVar

from loguru import logger

from detection_training.errors import PipelineError, StageError

T = TypeVar("T")
U = TypeVar("U")
In = TypeVar("In")
Out = TypeVar("Out")

_EXHAUSTED = object()


class Subscription(ABC):
    """Link between one publisher and one subscriber."""

    @abstractmethod
    def request(self, n: int) -> None:
        """Allow the publisher to push up to ``n`` more items."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop delivery.  Takes effect before the next item is produced."""


class Subscriber(ABC, Generic[T]):
    """Receives items pushed by a publisher."""

    @abstractmethod
    def on_subscribe(self, subscription: Subscription) -> None: ...

    @abstractmethod
    def on_next(self, item: T) -> None: ...

    @abstractmethod
    def on_error(self, error: BaseException) -> None: ...

    @abstractmethod
    def on_complete(self) -> None: ...


class Transform(ABC, Generic[In, Out]):
    """A stage converting one item into another."""

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def invoke(self, item: In) -> Out: ...

    def __call__(self, item: In) -> Out:
        return self.invoke(item)


class FunctionTransform(Transform[In, Out]):
    """Adapts a plain callable to the Transform interface."""

    def __init__(self, fn: Callable[[In], Out], name: str | None = None) -> None:
        self._fn = fn
        self._name = name or getattr(fn, "__name__", type(fn).__name__)

    @property
    def name(self) -> str:
        return self._name

    def invoke(self, item: In) -> Out:
        return self._fn(item)


class BatchIterator(ABC, Generic[T]):
    """Pull-based producer with an explicit "has more" predicate."""

    @abstractmethod
    def has_next(self) -> bool: ...

    @abstractmethod
    def next(self) -> T: ...

    @property
    def last_iteration_id(self) -> int | None:
        """Id of the last item produced, if the iterator numbers its items."""
        return None


class Publisher(ABC, Generic[T]):
    """An ordered, push-based sequence of items."""

    @abstractmethod
    def subscribe(self, subscriber: Subscriber[T]) -> None: ...

    def map(self, transform: Transform[T, U] | Callable[[T], U]) -> Publisher[U]:
        """Return a publisher emitting ``transform(item)`` for every item."""
        if not isinstance(transform, Transform):
            transform = FunctionTransform(transform)
        return MapPublisher(self, transform)

    def __iter__(self) -> Generator[T, None, None]:
        subscriber: BlockingSubscriber[T] = BlockingSubscriber()
        self.subscribe(subscriber)
        return subscriber.items()


class _DrainingSubscription(Subscription, Generic[T]):
    """Delivers ``pull()`` results while demand is outstanding.

    ``pull`` returns ``_EXHAUSTED`` when there is nothing left.  Requests made
    from inside ``on_next`` only add demand; the outer drain loop delivers it,
    so items are never delivered re-entrantly or out of order.
    """

    def __init__(
        self, subscriber: Subscriber[T], pull: Callable[[], object]
    ) -> None:
        self._subscriber = subscriber
        self._pull = pull
        self._lock = threading.Lock()
        self._demand = 0
        self._draining = False
        self._done = False

    def request(self, n: int) -> None:
        if n <= 0:
            raise ValueError(f"request count must be positive, got {n}")
        with self._lock:
            if self._done:
                return
            self._demand += n
            if self._draining:
                return
            self._draining = True
        self._drain()

    def cancel(self) -> None:
        with self._lock:
            self._done = True

    def _finish(self) -> None:
        with self._lock:
            self._done = True
            self._draining = False

    def _drain(self) -> None:
        while True:
            with self._lock:
                if self._done or self._demand == 0:
                    self._draining = False
                    return
                self._demand -= 1
            try:
                item = self._pull()
            except Exception as exc:
                self._finish()
                self._subscriber.on_error(exc)
                return
            if item is _EXHAUSTED:
                self._finish()
                self._subscriber.on_complete()
                return
            self._subscriber.on_next(item)  # type: ignore[arg-type]


class IteratorPublisher(Publisher[T]):
    """Publishes the items of a :class:`BatchIterator`.

    Completes when ``has_next()`` turns false.  An iterator failure ends the
    stream with a :class:`StageError` named after the iterator class and
    carrying the id the failed item would have had.  The iterator can only
    be consumed once, so a second subscriber is rejected.
    """

    def __init__(self, iterator: BatchIterator[T]) -> None:
        self._iterator = iterator
        self._subscribed = False

    def _pull(self) -> object:
        name = type(self._iterator).__name__
        try:
            if not self._iterator.has_next():
                logger.debug(f"{name} exhausted")
                return _EXHAUSTED
            return self._iterator.next()
        except Exception as exc:
            last = self._iterator.last_iteration_id
            raise StageError(name, None if last is None else last + 1) from exc

    def subscribe(self, subscriber: Subscriber[T]) -> None:
        if self._subscribed:
            raise PipelineError("IteratorPublisher supports a single subscriber")
        self._subscribed = True
        subscriber.on_subscribe(_DrainingSubscription(subscriber, self._pull))


class CallablePublisher(Publisher[T]):
    """On-demand publisher: each requested item is a fresh ``factory()`` call.

    Never completes on its own; subscribers cancel when they are done.
    """

    def __init__(self, factory: Callable[[], T]) -> None:
        self._factory = factory

    def subscribe(self, subscriber: Subscriber[T]) -> None:
        subscriber.on_subscribe(_DrainingSubscription(subscriber, self._factory))


class MapPublisher(Publisher[Out]):
    """Applies a transform to each upstream item, one-to-one and in order."""

    def __init__(self, upstream: Publisher[In], transform: Transform[In, Out]) -> None:
        self._upstream = upstream
        self._transform = transform

    def subscribe(self, subscriber: Subscriber[Out]) -> None:
        self._upstream.subscribe(_MapSubscriber(self._transform, subscriber))


class _MapSubscriber(Subscriber[In], Generic[In, Out]):
    # Demand passes straight through: one upstream item per downstream item.

    def __init__(
        self, transform: Transform[In, Out], downstream: Subscriber[Out]
    ) -> None:
        self._transform = transform
        self._downstream = downstream
        self._subscription: Subscription | None = None
        self._failed = False

    def on_subscribe(self, subscription: Subscription) -> None:
        self._subscription = subscription
        self._downstream.on_subscribe(subscription)

    def on_next(self, item: In) -> None:
        if self._failed:
            return
        try:
            result = self._transform(item)
        except Exception as exc:
            self._failed = True
            if self._subscription is not None:
                self._subscription.cancel()
            error = StageError(
                self._transform.name, getattr(item, "iteration_id", None)
            )
            error.__cause__ = exc
            self._downstream.on_error(error)
            return
        self._downstream.on_next(result)

    def on_error(self, error: BaseException) -> None:
        if not self._failed:
            self._downstream.on_error(error)

    def on_complete(self) -> None:
        if not self._failed:
            self._downstream.on_complete()


class BlockingSubscriber(Subscriber[T]):
    """Buffers pushed items so they can be pulled with :meth:`items`.

    Works with synchronous publishers (items arrive during ``request``) and
    with publishers that push from another thread.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._buffer: deque[T] = deque()
        self._subscription: Subscription | None = None
        self._error: BaseException | None = None
        self._done = False

    def on_subscribe(self, subscription: Subscription) -> None:
        with self._cond:
            self._subscription = subscription
            self._cond.notify_all()

    def on_next(self, item: T) -> None:
        with self._cond:
            self._buffer.append(item)
            self._cond.notify_all()

    def on_error(self, error: BaseException) -> None:
        with self._cond:
            self._error = error
            self._done = True
            self._cond.notify_all()

    def on_complete(self) -> None:
        with self._cond:
            self._done = True
            self._cond.notify_all()

    def cancel(self) -> None:
        with self._cond:
            subscription = None if self._done else self._subscription
            self._done = True
        if subscription is not None:
            subscription.cancel()

    def _take(self) -> object:
        with self._cond:
            self._cond.wait_for(lambda: self._subscription is not None or self._done)
            subscription = self._subscription
            needs_request = not self._buffer and not self._done
        if needs_request and subscription is not None:
            subscription.request(1)
        with self._cond:
            self._cond.wait_for(lambda: bool(self._buffer) or self._done)
            if self._buffer:
                return self._buffer.popleft()
            if self._error is not None:
                raise self._error
            return _EXHAUSTED

    def items(self) -> Generator[T, None, None]:
        """Yield items one at a time; closing the generator cancels."""
        try:
            while True:
                item = self._take()
                if item is _EXHAUSTED:
                    return
                yield item  # type: ignore[misc]
        finally:
            self.cancel()
