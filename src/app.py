"""
Gradio Frontend for Persona Duel

A minimalist web interface for configuring two personas, chatting with
them, running autonomous duels, and navigating branches.
"""

import gradio as gr
import asyncio
import html
import logging
from typing import Any, AsyncGenerator, List, Optional, Tuple

from config import (
    ApiKeys,
    CONVERSATION_START_TONES,
    CONVERSATION_TYPES,
    ConfigLoader,
    DEFAULT_MODELS,
    SUPPORTED_PROVIDERS,
)
from conversation_state import MAIN_BRANCH_ID, SYSTEM_AUTHOR
from session import DuelSession
from utils import setup_logging, DuelFormatter, truncate_text

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.3

PERSONA_COLORS = {
    "p1": ("#2563eb", "#eff6ff", "#3b82f6", "🔵"),
    "p2": ("#059669", "#f0fdf4", "#10b981", "🟢"),
}


class DuelRunner:
    """Binds the Gradio controls to one DuelSession."""

    def __init__(self, session: DuelSession):
        self.session = session

    # ------------------------------------------------------------ rendering

    def _slot_of(self, author: str) -> Optional[str]:
        if author == self.session.persona_1.name:
            return "p1"
        if author == self.session.persona_2.name:
            return "p2"
        return None

    def _format_chat(self) -> str:
        """Format the active branch as HTML."""
        messages = self.session.messages
        topic = html.escape(self.session.topic)

        html_parts = [f"""
        <div style='background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
                    padding: 16px; border-radius: 12px; margin-bottom: 16px;'>
            <h2 style='margin: 0; color: white; font-size: 1.2em;'>🎭 {topic}</h2>
            <p style='margin: 6px 0 0 0; color: #e0e7ff;'>
                {html.escape(self.session.conversation_type)} ·
                {html.escape(self.session.conversation_start_tone)} ·
                {html.escape(self.session.store.active_branch.name)}
            </p>
        </div>
        """]

        if not messages:
            html_parts.append("""
            <div style='text-align: center; padding: 40px; color: #999;'>
                <p>Send a message or press Play to start the duel.</p>
            </div>
            """)
            return "".join(html_parts)

        html_parts.append("<div style='max-height: 600px; overflow-y: auto; padding: 10px;'>")
        for msg in messages:
            text = html.escape(msg.text).replace("\n", "<br>")
            author = html.escape(msg.author)

            if msg.author == SYSTEM_AUTHOR:
                html_parts.append(f"""
                <div style='margin: 12px 0; padding: 12px; background: #fff7ed;
                            border-left: 4px solid #f97316; border-radius: 8px; color: #9a3412;'>
                    🎬 {text}
                </div>
                """)
                continue

            slot = self._slot_of(msg.author)
            if slot is None:
                color, bg, border, emoji = "#374151", "#f9fafb", "#9ca3af", "🧑"
            else:
                color, bg, border, emoji = PERSONA_COLORS[slot]

            if msg.is_internal_monologue:
                body = "<em>thinking...</em>" if msg.is_loading else f"<em>{text}</em>"
                html_parts.append(f"""
                <div style='margin: 6px 0 0 24px; padding: 8px 12px; color: #6b7280;
                            border-left: 2px dashed {border}; font-size: 0.85em;'>
                    💭 {author}: {body}
                </div>
                """)
                continue

            annotations = []
            if msg.sentiment is not None:
                annotations.append(f"sentiment {msg.sentiment:+.2f}")
            if msg.influence_score is not None:
                annotations.append(f"influence {msg.influence_score:.1f}")
            if msg.vote == 1:
                annotations.append("👍")
            elif msg.vote == -1:
                annotations.append("👎")

            image = ""
            if msg.image_base64:
                image = (
                    f"<img src='data:image/png;base64,{msg.image_base64}' "
                    f"style='max-width: 256px; border-radius: 8px; margin-top: 8px;'/>"
                )

            html_parts.append(f"""
            <div style='margin: 12px 0; padding: 14px; background: {bg};
                        border-left: 4px solid {border}; border-radius: 8px;'>
                <div style='display: flex; margin-bottom: 6px;'>
                    <span style='margin-right: 8px;'>{emoji}</span>
                    <span style='font-weight: 600; color: {color};'>{author}</span>
                    <span style='margin-left: auto; color: #6b7280; font-size: 0.8em;'>
                        {' · '.join(annotations)}
                    </span>
                </div>
                <div style='color: #1f2937; line-height: 1.6;'>
                    {"⏳ ..." if msg.is_loading else text}
                </div>
                {image}
            </div>
            """)
        html_parts.append("</div>")
        return "".join(html_parts)

    def _status(self, note: str = "") -> str:
        session = self.session
        if session.is_simulating:
            sim = session.simulation
            state = f"▶️ Simulating turn {sim.current_turn + 1}/{sim.max_turns}"
        elif session.gate.holder == "branch_switch":
            state = "🌿 Switching branch..."
        elif session.is_busy:
            state = f"🔄 {session.active_persona.name} is responding..."
        else:
            state = f"✅ Ready. {session.active_persona.name} responds next."
        return f"{state} {note}".strip()

    def _branch_choices(self) -> List[Tuple[str, str]]:
        return [(b.name, b.id) for b in self.session.store.list_branches()]

    def _message_choices(self) -> List[Tuple[str, str]]:
        return [
            (f"{m.author}: {truncate_text(m.text, 60)}", m.id)
            for m in self.session.messages
            if not m.is_internal_monologue and not m.is_loading
        ]

    def _refresh(self, note: str = "") -> Tuple[Any, ...]:
        return (
            self._format_chat(),
            self._status(note),
            gr.update(choices=self._branch_choices(), value=self.session.store.active_branch_id),
            gr.update(choices=self._message_choices(), value=None),
        )

    def _memory_markdown(self) -> str:
        if not self.session.long_term_memory:
            return "_No memory facts._"
        return "\n".join(
            f"{i}. {fact}" for i, fact in enumerate(self.session.long_term_memory)
        )

    # -------------------------------------------------------------- actions

    async def _follow(self, task: "asyncio.Task") -> AsyncGenerator[Tuple[Any, ...], None]:
        while not task.done() or self.session.is_simulating:
            yield self._refresh()
            await asyncio.sleep(POLL_INTERVAL_SECONDS)
        task.result()

    async def send_message(self, text: str) -> AsyncGenerator[Tuple[Any, ...], None]:
        """
        Send a user message and stream the exchange.

        Yields:
            Tuple of (chat_html, status, branch_update, message_update, input_text)
        """
        if self.session.is_busy or self.session.is_simulating:
            yield (*self._refresh("(busy, message not sent)"), text)
            return

        task = asyncio.create_task(self.session.send_message(text))
        async for update in self._follow(task):
            yield (*update, "")
        yield (*self._refresh(), "")

    async def play(self, max_turns: float, messages_per_turn: str) -> AsyncGenerator[Tuple[Any, ...], None]:
        """Start the autonomous simulation and stream it until it stops."""
        if not self.session.start_simulation(int(max_turns), int(messages_per_turn)):
            yield self._refresh("(cannot start now)")
            return

        task = asyncio.create_task(self.session.wait_for_simulation())
        async for update in self._follow(task):
            yield update
        yield self._refresh(f"(simulation {self.session.simulation.stop_reason})")

    def stop(self) -> Tuple[Any, ...]:
        self.session.stop_simulation()
        return self._refresh("(stopping after the current reply)")

    def apply_persona(
        self,
        slot: str,
        name: str,
        provider: str,
        model: str,
        temperature: float,
        system_prompt: str
    ) -> str:
        try:
            applied = self.session.update_persona(
                slot,
                name=name.strip(),
                api_provider=provider,
                model=model.strip() or DEFAULT_MODELS[provider],
                temperature=float(temperature),
                system_prompt=system_prompt,
            )
        except ValueError as e:
            return f"❌ {e}"
        return "✅ Saved" if applied else "⏳ Busy, try again after the current reply"

    async def generate_persona_prompt(self, slot: str) -> str:
        return await self.session.generate_persona_prompt(slot)

    def apply_settings(self, topic: str, conversation_type: str, tone: str) -> Tuple[Any, ...]:
        self.session.set_topic(topic)
        self.session.set_conversation_type(conversation_type)
        self.session.set_start_tone(tone)
        return self._refresh()

    async def randomize_topic(self) -> str:
        return await self.session.randomize_topic()

    def add_memory(self, fact: str) -> Tuple[str, str]:
        self.session.add_memory(fact)
        return self._memory_markdown(), ""

    def remove_memory(self, index: float) -> str:
        self.session.remove_memory(int(index))
        return self._memory_markdown()

    async def fork(self, message_id: Optional[str]) -> Tuple[Any, ...]:
        if not message_id:
            return self._refresh("(pick a message to fork from)")
        branch_id = await self.session.fork(message_id)
        return self._refresh("" if branch_id else "(fork rejected)")

    async def select_branch(self, branch_id: Optional[str]) -> Tuple[Any, ...]:
        if branch_id:
            await self.session.select_branch(branch_id)
        return self._refresh()

    def delete_branch(self, branch_id: Optional[str]) -> Tuple[Any, ...]:
        if not branch_id or branch_id == MAIN_BRANCH_ID:
            return self._refresh("(the main branch cannot be deleted)")
        deleted = self.session.delete_branch(branch_id)
        return self._refresh("" if deleted else "(delete rejected)")

    def vote(self, message_id: Optional[str], value: int) -> Tuple[Any, ...]:
        if message_id:
            self.session.vote(message_id, value)
        return self._refresh()

    def clear(self) -> Tuple[Any, ...]:
        if not self.session.clear_session():
            return self._refresh("(busy, not cleared)")
        return self._refresh()

    def new_session(self) -> Tuple[Any, ...]:
        if not self.session.new_session():
            return self._refresh("(busy, session kept)")
        return self._refresh()

    async def summarize(self) -> str:
        return await self.session.generate_summary()

    async def argument_map(self) -> str:
        data = await self.session.generate_argument_map()
        if not data.nodes:
            return "_Not enough conversation to map yet._"
        names = {node.id: node.text for node in data.nodes}
        lines = [f"- **[{n.type}] {n.author}:** {n.text}" for n in data.nodes]
        lines.extend(
            f"- _{truncate_text(names[e.source], 40)}_ **{e.type}** _{truncate_text(names[e.target], 40)}_"
            for e in data.edges
        )
        return "\n".join(lines)

    def metrics(self) -> str:
        return DuelFormatter.format_metrics(self.session.compute_metrics())

    def export(self) -> Optional[str]:
        return self.session.export_transcript()

    def save_session(self) -> Tuple[str, Any]:
        path = self.session.save()
        return (
            f"✅ Saved to `{path}`",
            gr.update(choices=self.session.list_saved_sessions(), value=None),
        )

    def load_session(self, filename: Optional[str]) -> Tuple[Any, ...]:
        if not filename:
            return (*self._refresh("(no saved session selected)"), self.session.topic)
        try:
            loaded = self.session.load(filename)
        except FileNotFoundError:
            logger.warning(f"Saved session disappeared: {filename}")
            return (*self._refresh("(saved session not found)"), self.session.topic)
        note = "" if loaded else "(busy, session not loaded)"
        return (*self._refresh(note), self.session.topic)

    def save_keys(self, cohere: str, mistral: str, openrouter: str) -> str:
        self.session.set_api_keys(
            ApiKeys(cohere=cohere.strip(), mistral=mistral.strip(), openrouter=openrouter.strip())
        )
        return "✅ API keys saved"


def _persona_panel(slot: str, runner: DuelRunner):
    persona = runner.session.roster.get(slot)
    name = gr.Textbox(label="Name", value=persona.name)
    provider = gr.Dropdown(label="Provider", choices=list(SUPPORTED_PROVIDERS), value=persona.api_provider)
    model = gr.Textbox(label="Model", value=persona.model)
    temperature = gr.Slider(label="Temperature", minimum=0.0, maximum=2.0, step=0.05, value=persona.temperature)
    system_prompt = gr.Textbox(label="System Prompt", value=persona.system_prompt, lines=5)
    with gr.Row():
        save_btn = gr.Button("💾 Save")
        generate_btn = gr.Button("✨ Generate Prompt")
    result = gr.Markdown()

    provider.change(fn=lambda p: DEFAULT_MODELS[p], inputs=[provider], outputs=[model])
    save_btn.click(
        fn=lambda *args: runner.apply_persona(slot, *args),
        inputs=[name, provider, model, temperature, system_prompt],
        outputs=[result]
    )

    async def generate_prompt():
        return await runner.generate_persona_prompt(slot)

    generate_btn.click(fn=generate_prompt, outputs=[system_prompt])


def create_gradio_interface(session: DuelSession):
    """Create the Gradio interface."""

    runner = DuelRunner(session)

    custom_css = """
    .gradio-container {
        max-width: 1400px !important;
    }
    """

    with gr.Blocks(css=custom_css, title="Persona Duel") as app:
        gr.Markdown("""
        # 🎭 Persona Duel

        Two configurable AI personas converse on a topic. Talk to them, let them
        duel on their own, and fork the conversation at any reply.
        """)

        with gr.Row():
            with gr.Column(scale=2):
                chat_display = gr.HTML(value=runner._format_chat())
                status_display = gr.Textbox(label="Status", value=runner._status(), interactive=False)

                with gr.Row():
                    message_input = gr.Textbox(label="Your message", scale=4)
                    send_btn = gr.Button("📨 Send", variant="primary", scale=1)

                with gr.Row():
                    max_turns = gr.Slider(
                        label="Turns", minimum=1, maximum=50, step=1,
                        value=session.config.default_max_turns
                    )
                    messages_per_turn = gr.Radio(
                        label="Messages per turn", choices=["1", "2"],
                        value=str(session.config.default_messages_per_turn)
                    )
                with gr.Row():
                    play_btn = gr.Button("▶️ Play", variant="primary")
                    stop_btn = gr.Button("⏹️ Stop", variant="stop")
                    clear_btn = gr.Button("🧹 Clear")
                    new_btn = gr.Button("🆕 New Session")

                with gr.Accordion("🌿 Branches", open=False):
                    branch_select = gr.Dropdown(
                        label="Branch", choices=runner._branch_choices(),
                        value=session.store.active_branch_id
                    )
                    message_select = gr.Dropdown(label="Message", choices=runner._message_choices())
                    with gr.Row():
                        fork_btn = gr.Button("🍴 Fork at message")
                        delete_btn = gr.Button("🗑️ Delete branch", variant="stop")
                        up_btn = gr.Button("👍")
                        down_btn = gr.Button("👎")

            with gr.Column(scale=1):
                with gr.Accordion("⚙️ Conversation", open=True):
                    topic_input = gr.Textbox(label="Topic", value=session.topic)
                    random_topic_btn = gr.Button("🎲 Random Topic")
                    type_select = gr.Dropdown(
                        label="Type", choices=CONVERSATION_TYPES, value=session.conversation_type
                    )
                    tone_select = gr.Dropdown(
                        label="Starting Tone", choices=CONVERSATION_START_TONES,
                        value=session.conversation_start_tone
                    )
                    apply_btn = gr.Button("Apply")

                with gr.Accordion("🧠 Long-term Memory", open=False):
                    memory_display = gr.Markdown(runner._memory_markdown())
                    memory_input = gr.Textbox(label="New fact")
                    add_memory_btn = gr.Button("Add")
                    memory_index = gr.Number(label="Index to remove", value=0, precision=0)
                    remove_memory_btn = gr.Button("Remove")

                for slot, title in (("p1", "🔵 Persona 1"), ("p2", "🟢 Persona 2")):
                    with gr.Accordion(title, open=False):
                        _persona_panel(slot, runner)

                with gr.Accordion("🔑 API Keys", open=False):
                    keys = session.get_api_keys()
                    cohere_key = gr.Textbox(label="Cohere", value=keys.cohere, type="password")
                    mistral_key = gr.Textbox(label="Mistral", value=keys.mistral, type="password")
                    openrouter_key = gr.Textbox(label="OpenRouter", value=keys.openrouter, type="password")
                    save_keys_btn = gr.Button("Save Keys")
                    keys_status = gr.Markdown()

                with gr.Accordion("📊 Analysis", open=False):
                    summary_btn = gr.Button("📝 Summary")
                    argument_btn = gr.Button("🗺️ Argument Map")
                    metrics_btn = gr.Button("📈 Metrics")
                    analysis_display = gr.Markdown()
                    export_btn = gr.Button("⬇️ Export Transcript")
                    export_file = gr.File(label="Transcript")

                with gr.Accordion("💾 Saved Sessions", open=False):
                    save_session_btn = gr.Button("Save Session")
                    saved_select = gr.Dropdown(
                        label="Saved session", choices=session.list_saved_sessions()
                    )
                    load_session_btn = gr.Button("Load Session")
                    saved_status = gr.Markdown()

        refresh_outputs = [chat_display, status_display, branch_select, message_select]

        # Event handlers
        send_btn.click(
            fn=runner.send_message,
            inputs=[message_input],
            outputs=refresh_outputs + [message_input]
        )
        message_input.submit(
            fn=runner.send_message,
            inputs=[message_input],
            outputs=refresh_outputs + [message_input]
        )
        play_btn.click(fn=runner.play, inputs=[max_turns, messages_per_turn], outputs=refresh_outputs)
        stop_btn.click(fn=runner.stop, outputs=refresh_outputs)
        clear_btn.click(fn=runner.clear, outputs=refresh_outputs)
        new_btn.click(fn=runner.new_session, outputs=refresh_outputs)

        branch_select.input(fn=runner.select_branch, inputs=[branch_select], outputs=refresh_outputs)
        fork_btn.click(fn=runner.fork, inputs=[message_select], outputs=refresh_outputs)
        delete_btn.click(fn=runner.delete_branch, inputs=[branch_select], outputs=refresh_outputs)
        up_btn.click(fn=lambda m: runner.vote(m, 1), inputs=[message_select], outputs=refresh_outputs)
        down_btn.click(fn=lambda m: runner.vote(m, -1), inputs=[message_select], outputs=refresh_outputs)

        apply_btn.click(
            fn=runner.apply_settings,
            inputs=[topic_input, type_select, tone_select],
            outputs=refresh_outputs
        )
        random_topic_btn.click(fn=runner.randomize_topic, outputs=[topic_input])

        add_memory_btn.click(fn=runner.add_memory, inputs=[memory_input], outputs=[memory_display, memory_input])
        remove_memory_btn.click(fn=runner.remove_memory, inputs=[memory_index], outputs=[memory_display])

        save_keys_btn.click(
            fn=runner.save_keys,
            inputs=[cohere_key, mistral_key, openrouter_key],
            outputs=[keys_status]
        )

        summary_btn.click(fn=runner.summarize, outputs=[analysis_display])
        argument_btn.click(fn=runner.argument_map, outputs=[analysis_display])
        metrics_btn.click(fn=runner.metrics, outputs=[analysis_display])
        export_btn.click(fn=runner.export, outputs=[export_file])

        save_session_btn.click(fn=runner.save_session, outputs=[saved_status, saved_select])
        load_session_btn.click(
            fn=runner.load_session,
            inputs=[saved_select],
            outputs=refresh_outputs + [topic_input]
        )

    return app


def main():
    """Launch the Gradio app."""

    config = ConfigLoader.load_from_env()
    setup_logging(log_level=config.log_level, log_file=config.log_file)

    if not config.gemini_api_key:
        print("\n⚠️  WARNING: GEMINI_API_KEY not set!")
        print("Gemini personas and the analysis tools will fail without it\n")

    app = create_gradio_interface(DuelSession(config))

    logger.info("Launching Gradio interface...")

    app.launch(
        server_name="0.0.0.0",
        server_port=7860,
        share=False,
        show_error=True
    )


if __name__ == "__main__":
    main()
