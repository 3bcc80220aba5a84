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

from unittest import mock

from opentelemetry import trace as trace_api
from opentelemetry.instrumentation.db_middleware.span import (
    TaggedSpan,
    start_span,
)
from opentelemetry.instrumentation.db_middleware.tags import (
    DB_ERROR_CODE,
    ERROR,
    Tag,
    user_tag,
)
from opentelemetry.test.test_base import TestBase


class TestStartSpan(TestBase):
    def setUp(self):
        super().setUp()
        self.tracer = self.tracer_provider.get_tracer(__name__)

    def test_span_finished_on_success(self):
        with start_span(
            self.tracer, "db.query", [Tag("db.statement", "SELECT 1")]
        ) as span:
            self.assertTrue(span.is_recording())

        spans_list = self.memory_exporter.get_finished_spans()
        self.assertEqual(len(spans_list), 1)
        self.assertEqual(spans_list[0].name, "db.query")
        self.assertIs(spans_list[0].kind, trace_api.SpanKind.CLIENT)
        self.assertEqual(spans_list[0].attributes["db.statement"], "SELECT 1")
        self.assertNotIn(ERROR, spans_list[0].attributes)

    def test_span_finished_once_on_error(self):
        error = ValueError("boom")
        with self.assertRaises(ValueError) as raised:
            with start_span(self.tracer, "db.exec"):
                raise error

        self.assertIs(raised.exception, error)
        spans_list = self.memory_exporter.get_finished_spans()
        self.assertEqual(len(spans_list), 1)
        self.assertIs(spans_list[0].attributes[ERROR], True)
        self.assertEqual(spans_list[0].attributes[DB_ERROR_CODE], "ValueError")
        self.assertIs(
            spans_list[0].status.status_code, trace_api.StatusCode.ERROR
        )

    def test_early_return_finishes_span(self):
        def operation():
            with start_span(self.tracer, "db.prepare"):
                return "statement"

        self.assertEqual(operation(), "statement")
        self.assertEqual(len(self.memory_exporter.get_finished_spans()), 1)

    def test_tags_added_in_block(self):
        with start_span(self.tracer, "db.exec") as span:
            span.add_tag(Tag("db.rows", 3)).add_tag(None)

        finished = self.memory_exporter.get_finished_spans()[0]
        self.assertEqual(finished.attributes["db.rows"], 3)

    def test_span_is_current_inside_block(self):
        with start_span(self.tracer, "db.connect") as span:
            self.assertIs(trace_api.get_current_span(), span.span)


class TestTaggedSpan(TestBase):
    def test_add_tag_is_chainable(self):
        mock_span = mock.Mock()
        mock_span.is_recording.return_value = True
        tagged = TaggedSpan(mock_span)

        self.assertIs(
            tagged.add_tag(user_tag("testuser")).add_tag(user_tag(None)),
            tagged,
        )
        mock_span.set_attribute.assert_called_once_with("db.user", "testuser")

    def test_not_recording(self):
        mock_span = mock.Mock()
        mock_span.is_recording.return_value = False
        evaluated = []

        def lazy_tags():
            evaluated.append(True)
            yield user_tag("testuser")

        TaggedSpan(mock_span).add_tags(lazy_tags())

        self.assertFalse(mock_span.set_attribute.called)
        self.assertEqual(evaluated, [])
