"""expansion pipeline: turns ai responses into nodes and edges as they stream.

structured requests (root creation, re-expansion) are decoded twice: a fast
regex pass over the growing buffer creates children the moment each one is
complete, and a final json parse on stream end corrects and backfills them.
answer requests (follow-ups, deep dives) stream plain text straight into the
node's long-form content.

node states: idle -> busy -> settled | errored. every write goes through the
store by id, so writes aimed at a node deleted mid-request are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..config import CanvasConfig
from . import prompts
from .client import AIRequestError, ClientProtocol, describe_error
from .graph import GraphStore
from .layout import CanvasPort, FitViewRequest
from .models import MAX_DERIVED_QUESTIONS, EdgeStyle, Node, NodeKind, Position
from .partial_json import IncrementalExtractor, parse_json_object

logger = logging.getLogger(__name__)


# --- configuration ---

CHILD_OFFSET_X = 450.0
CHILD_OFFSET_Y = 280.0
PARSE_ERROR_MESSAGE = "could not read the ai response, try again"


def parse_answer(text: str) -> tuple[str, Optional[str]]:
    """split a finished answer into (long-form content, summary).

    falls back to the raw text with no summary when it isn't the expected json.
    """
    try:
        data = parse_json_object(text)
        answer = data.get("answer")
        if not isinstance(answer, str) or not answer.strip():
            raise ValueError("no answer field")
    except ValueError:
        logger.info("answer was not json, keeping raw text")
        return text, None
    summary = data.get("summary")
    return answer, summary if isinstance(summary, str) and summary.strip() else None


class ExpansionPipeline:
    """issues ai requests and materializes their results in the graph."""

    def __init__(
        self,
        store: GraphStore,
        client: ClientProtocol,
        config: Optional[CanvasConfig] = None,
        canvas: Optional[CanvasPort] = None,
        auto_questions: bool = True,
    ):
        self.store = store
        self.client = client
        self.config = config or CanvasConfig()
        self.canvas = canvas
        self.auto_questions = auto_questions
        self.is_loading = False  # a root creation is in flight
        self._background: set[asyncio.Task] = set()

    # --- helpers ---

    def _edge_style(self) -> EdgeStyle:
        return EdgeStyle(line_kind=self.config.edge_type, color=self.config.edge_color, animated=True)

    def _child_position(self, parent: Node, index: int, total: Optional[int] = None) -> Position:
        offset = index - (total - 1) / 2 if total else index
        return Position(parent.position.x + CHILD_OFFSET_X, parent.position.y + offset * CHILD_OFFSET_Y)

    def _add_child(self, parent_id: str, label: str, description: str, index: int) -> Optional[str]:
        parent = self.store.get_node(parent_id)
        if parent is None:
            return None
        child = Node.create_child(label, description, self._child_position(parent, index))
        self.store.add_child(parent_id, child, self._edge_style())
        return child.id

    def _recenter(self, parent_id: str, child_ids: list[str]) -> None:
        parent = self.store.get_node(parent_id)
        live = [cid for cid in child_ids if self.store.has_node(cid)]
        if parent is None or not live:
            return
        self.store.move_nodes({
            cid: self._child_position(parent, index, len(live))
            for index, cid in enumerate(live)
        })

    def _fail(self, node_id: Optional[str], message: str) -> None:
        if node_id is not None:
            self.store.update_node(node_id, error=message)

    def _settle(self, node_id: Optional[str]) -> None:
        node = self.store.get_node(node_id) if node_id else None
        if node is not None and node.is_busy:
            self.store.update_node(node_id, is_busy=False)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_idle(self) -> None:
        """wait for background follow-on requests (derived questions)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --- structured streaming ---

    async def _stream_structured(self, target_id: str, messages: list[dict], write_overview: bool) -> bool:
        """stream a {overview, nodes} response under target_id.

        returns False when the target disappeared mid-stream. raises ValueError
        when the final buffer is not valid json.
        """
        extractor = IncrementalExtractor()
        created: list[str] = []

        async for delta in self.client.stream(messages, json_mode=True):
            if not delta.content:
                continue
            if not self.store.has_node(target_id):
                logger.warning("node %s was deleted mid-stream, dropping the rest", target_id)
                return False

            update = extractor.feed(delta.content)
            if update.overview is not None and write_overview:
                self.store.update_node(target_id, description=update.overview)
            for offset, item in enumerate(update.new_nodes):
                child_id = self._add_child(target_id, item["text"], item["description"], update.first_index + offset)
                if child_id:
                    created.append(child_id)

        if not self.store.has_node(target_id):
            return False

        result = extractor.finish()
        self._reconcile(target_id, result, created, write_overview)
        return True

    def _reconcile(self, target_id: str, result: dict, created: list[str], write_overview: bool) -> None:
        """let the authoritative parse overwrite and backfill the incremental pass.

        raises ValueError when the result has no usable node list.
        """
        overview = result.get("overview")
        if write_overview and isinstance(overview, str):
            self.store.update_node(target_id, description=overview)

        nodes = result.get("nodes") or []
        if not isinstance(nodes, list):
            raise ValueError(f"nodes should be a list, got {type(nodes).__name__}")
        items = [item for item in nodes if isinstance(item, dict)]
        for index, item in enumerate(items):
            label = str(item.get("text", ""))
            description = str(item.get("description", ""))
            if index < len(created):
                # user may have deleted it meanwhile; update_node drops that write
                self.store.update_node(created[index], label=label, description=description)
            else:
                child_id = self._add_child(target_id, label, description, index)
                if child_id:
                    created.append(child_id)

        extras = created[len(items):]
        if extras:
            logger.warning("incremental pass saw %d extra nodes, removing", len(extras))
            self.store.remove_nodes(extras)
            del created[len(items):]

        self._recenter(target_id, created)

    # --- operations ---

    async def create_root(self, text: str) -> Optional[str]:
        """start a fresh session from the user's seed idea.

        returns the root id, or None when rejected (empty text or a root
        creation already running).
        """
        text = (text or "").strip()
        if not text or self.is_loading:
            return None

        self.is_loading = True
        root_id: Optional[str] = None
        try:
            self.store.clear()
            root = Node.create_root(text, description=prompts.ROOT_DESCRIPTION)
            root.is_busy = True
            self.store.add_node(root)
            root_id = root.id

            if await self._stream_structured(root_id, prompts.root_messages(text), write_overview=True):
                children = self.store.children_of(root_id)
                if self.canvas is not None:
                    self.canvas.fit_view(FitViewRequest(node_ids=[root_id, *children[:3]], padding=0.25, duration=1000))
        except AIRequestError as e:
            logger.error("root expansion failed: %s", e)
            self._fail(root_id, describe_error(e))
        except ValueError as e:
            logger.error("root expansion returned invalid json: %s", e)
            self._fail(root_id, PARSE_ERROR_MESSAGE)
        finally:
            self._settle(root_id)
            self.is_loading = False
        return root_id

    async def re_expand(self, node_id: str, requirement: Optional[str] = None) -> bool:
        """replace a node's subtree with a fresh set of ai suggestions."""
        node = self.store.get_node(node_id)
        if node is None or node.is_busy:
            return False

        self.store.remove_descendants(node_id)
        self.store.update_node(node_id, is_busy=True, is_detail_expanded=False, error=None, pending_question="")
        messages = prompts.expand_messages(self.store.path_to(node_id), node.label, requirement)
        try:
            return await self._stream_structured(node_id, messages, write_overview=False)
        except AIRequestError as e:
            logger.error("expansion of %s failed: %s", node_id, e)
            self._fail(node_id, describe_error(e))
        except ValueError as e:
            logger.error("expansion of %s returned invalid json: %s", node_id, e)
            self._fail(node_id, PARSE_ERROR_MESSAGE)
        finally:
            self._settle(node_id)
        return False

    async def ask_follow_up(self, node_id: str, question: Optional[str] = None) -> Optional[str]:
        """answer a question about a node in a new child node.

        uses the node's pending question when none is given. returns the new
        child's id.
        """
        parent = self.store.get_node(node_id)
        if parent is None or parent.is_busy:
            return None
        question = (question or parent.pending_question or "").strip()
        if not question:
            return None

        self.store.update_node(node_id, pending_question="")
        index = len(self.store.children_of(node_id))
        child = Node.create_child(question, "", self._child_position(parent, index))
        child.is_busy = True
        child.is_detail_expanded = True
        self.store.add_child(node_id, child, self._edge_style())

        root = self.store.root()
        messages = prompts.answer_messages(
            root_topic=root.label if root else "",
            path=self.store.path_to(node_id),
            topic=parent.label,
            detail=parent.description,
            question=question,
        )
        await self._stream_answer(child.id, messages)
        return child.id

    async def deep_dive(self, node_id: str) -> bool:
        """stream an in-depth explanation into the node itself.

        a node that already has content just gets its detail panel opened.
        """
        node = self.store.get_node(node_id)
        if node is None:
            return False
        if node.long_form_content and not node.is_detail_expanded:
            self.store.update_node(node_id, is_detail_expanded=True)
            return True
        if node.is_busy:
            return False

        self.store.update_node(node_id, is_busy=True, is_detail_expanded=True, error=None)
        root = self.store.root()
        messages = prompts.answer_messages(
            root_topic=root.label if root else "",
            path=self.store.path_to(node_id),
            topic=node.label,
            detail=node.description,
        )
        return await self._stream_answer(node_id, messages)

    async def _stream_answer(self, target_id: str, messages: list[dict]) -> bool:
        buffer = ""
        try:
            async for delta in self.client.stream(messages):
                if not delta.content:
                    continue
                buffer += delta.content
                if self.store.update_node(target_id, long_form_content=buffer) is None:
                    logger.warning("node %s was deleted mid-answer, dropping the rest", target_id)
                    return False

            answer, summary = parse_answer(buffer)
            node = self.store.get_node(target_id)
            if node is None:
                return False
            changes = {"long_form_content": answer, "is_busy": False}
            if summary and not node.description:
                changes["description"] = summary
            self.store.update_node(target_id, critical=True, **changes)
        except AIRequestError as e:
            logger.error("answer for %s failed: %s", target_id, e)
            self._fail(target_id, describe_error(e))
            return False
        finally:
            self._settle(target_id)

        if self.auto_questions:
            self._spawn(self.generate_derived_questions(target_id))
        return True

    async def generate_derived_questions(self, node_id: str) -> list[str]:
        """suggest up to three follow-up questions once long-form content exists."""
        node = self.store.get_node(node_id)
        if node is None or not node.long_form_content:
            return []
        messages = prompts.questions_messages(node.label, node.long_form_content)
        try:
            data = parse_json_object(await self.client.complete(messages, json_mode=True))
        except AIRequestError as e:
            logger.warning("derived questions for %s failed: %s", node_id, e)
            return []
        except ValueError as e:
            logger.warning("derived questions for %s were not json: %s", node_id, e)
            return []

        raw = data.get("questions")
        questions = [str(q).strip() for q in raw if str(q).strip()] if isinstance(raw, list) else []
        questions = questions[:MAX_DERIVED_QUESTIONS]
        if self.store.update_node(node_id, derived_questions=questions, critical=True) is None:
            return []
        return questions

    async def generate_image(self, node_id: str) -> Optional[str]:
        """illustrate a node. failures land in the node's error field."""
        node = self.store.get_node(node_id)
        if node is None or node.is_image_loading:
            return None

        self.store.update_node(node_id, is_image_loading=True, error=None)
        prompt = prompts.image_prompt(node.label, node.description, self.store.path_to(node_id))
        try:
            url = await self.client.generate_image(prompt)
        except (AIRequestError, ValueError) as e:
            logger.error("image for %s failed: %s", node_id, e)
            self.store.update_node(node_id, is_image_loading=False, error=describe_error(e))
            return None

        if self.store.update_node(node_id, image_url=url, is_image_loading=False, critical=True) is None:
            return None
        return url

    async def generate_summary(self) -> str:
        """prose summary of the whole map."""
        nodes = [
            {"label": n.label, "description": n.description, "type": n.kind.value}
            for n in self.store.nodes.values()
            if n.kind != NodeKind.STICKY
        ]
        if not nodes:
            return ""
        try:
            return await self.client.complete(prompts.summary_messages(nodes))
        except AIRequestError as e:
            logger.error("summary failed: %s", e)
            return describe_error(e)
        except ValueError as e:
            logger.error("summary response was unreadable: %s", e)
            return PARSE_ERROR_MESSAGE
