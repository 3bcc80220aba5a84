# Copyright The OpenTelemetry Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from opentelemetry import trace as trace_api
from opentelemetry.instrumentation.db_middleware.tags import (
    Tag,
    error_code_tag,
    error_tag,
)
from opentelemetry.trace import SpanKind


class TaggedSpan:
    """Chainable tag accumulator bound to a single span.

    Tags are only evaluated and set while the span is recording, so tag
    iterables may be lazy generators.
    """

    __slots__ = ("_span",)

    def __init__(self, span: trace_api.Span) -> None:
        self._span = span

    @property
    def span(self) -> trace_api.Span:
        return self._span

    def is_recording(self) -> bool:
        return self._span.is_recording()

    def add_tag(self, tag: Optional[Tag]) -> TaggedSpan:
        if tag is not None and self._span.is_recording():
            self._span.set_attribute(tag.key, tag.value)
        return self

    def add_tags(self, tags: Iterable[Optional[Tag]]) -> TaggedSpan:
        if not self._span.is_recording():
            return self
        for tag in tags:
            self.add_tag(tag)
        return self


@contextmanager
def start_span(
    tracer: trace_api.Tracer,
    name: str,
    tags: Iterable[Optional[Tag]] = (),
) -> Iterator[TaggedSpan]:
    """Open a client span around one delegated database call.

    The span is ended when the block exits, whichever way it exits. An
    exception escaping the block gets the error code and error flag tags
    attached and is re-raised as is.
    """
    with tracer.start_as_current_span(name, kind=SpanKind.CLIENT) as span:
        tagged = TaggedSpan(span).add_tags(tags)
        try:
            yield tagged
        except Exception as exc:
            tagged.add_tag(error_code_tag(exc)).add_tag(error_tag())
            raise
