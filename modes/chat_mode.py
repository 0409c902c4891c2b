import asyncio

import click
from rich.console import Console

from contexts.codebase_context import CodebaseContext
from core.context_attachment import SubmitMode


class ChatMode:
    """
    Line-oriented chat loop over an AssistantChat.

    Streams the assistant text as it arrives (or prints the rendered Markdown
    once settled) and shows codebase context summaries as they populate.
    """

    COMMANDS = {
        '/quit': 'exit the chat',
        '/mode': 'show or set the submit mode (simple, current-file, codebase)',
        '/model': 'show or set the model',
        '/models': 'list available models',
        '/history': 'reprint the transcript',
        '/help': 'show this help',
    }

    def __init__(self, chat, mode=SubmitMode.SIMPLE, markdown: bool = False, console: Console = None):
        self.chat = chat
        self.mode = SubmitMode.coerce(mode)
        self.markdown = markdown
        self.console = console or Console()
        self._printed = 0
        self._unsubscribe = None

    def start(self):
        """Start the chat interaction loop"""
        self._unsubscribe = self.chat.subscribe(self._on_event)
        try:
            asyncio.run(self.run())
        except KeyboardInterrupt:
            click.echo()
        finally:
            self._unsubscribe()

    async def run(self):
        while True:
            try:
                user_input = click.prompt(click.style('You', fg='blue', bold=True),
                                          prompt_suffix=': ', default='', show_default=False)
            except (KeyboardInterrupt, EOFError, click.Abort):
                click.echo()
                return

            text = user_input.strip()
            if not text:
                continue
            if text.startswith('/'):
                if not self.handle_command(text):
                    return
                continue

            focused = self.chat.focused_message_id
            if focused is None:
                focused = self.chat.push_new_user_message(True).id
            self.chat.set_text(focused, text)

            pending = self.chat.submit(self.mode)
            if pending is None:
                continue
            self._printed = 0
            click.echo(click.style('Assistant', fg='green', bold=True) + ': ', nl=False)
            try:
                await pending
            except asyncio.CancelledError:
                # Ctrl-C under asyncio.run arrives as cancellation of this task
                pending.cancel('interrupted')
                raise
            click.echo()

    def handle_command(self, line: str) -> bool:
        """Run a slash command; returns False when the loop should end"""
        name, _, arg = line.partition(' ')
        arg = arg.strip()
        if name == '/quit':
            return False
        if name == '/help':
            for cmd, desc in self.COMMANDS.items():
                click.echo(f"{cmd:10} {desc}")
        elif name == '/mode':
            if arg:
                try:
                    self.mode = SubmitMode.coerce(arg)
                except ValueError as e:
                    click.echo(click.style(str(e), fg='red'), err=True)
                    return True
            click.echo(f"mode: {self.mode.value}")
        elif name == '/model':
            if arg:
                try:
                    self.chat.model = arg
                except ValueError as e:
                    click.echo(click.style(str(e), fg='red'), err=True)
                    return True
            click.echo(f"model: {self.chat.model}")
        elif name == '/models':
            for model in self.chat.available_models():
                marker = ' (current)' if model == self.chat.model else ''
                click.echo(f"{model}{marker}")
        elif name == '/history':
            self.print_history()
        else:
            click.echo(click.style(f"Unknown command {name}; try /help", fg='yellow'), err=True)
        return True

    def print_history(self):
        for message in self.chat.messages:
            if message.role == 'user':
                if not message.body:
                    continue
                click.echo(click.style(f"[{message.id}] You", fg='blue', bold=True) + f": {message.body}")
                for context in message.contexts:
                    click.echo(click.style(context.summary(), dim=True))
            else:
                click.echo(click.style(f"[{message.id}] Assistant", fg='green', bold=True) + ':')
                self.console.print(message.body.renderable if self.markdown else message.body.text)
                if message.error:
                    click.echo(click.style(f"Error: {message.error}", fg='red'))

    def _on_event(self, event: str, data: dict):
        if event == 'assistant_updated':
            if self.markdown:
                return
            text = data.get('text', '')
            click.echo(text[self._printed:], nl=False)
            self._printed = len(text)
        elif event == 'context_populated':
            context = self.chat.codebase_context(data['message_id'], data['context_id'])
            if isinstance(context, CodebaseContext):
                click.echo(click.style(context.summary(), dim=True), err=True)
        elif event == 'assistant_error':
            click.echo()
            click.echo(click.style(f"Error: {data.get('error')}", fg='red'), err=True)
        elif event == 'settled' and self.markdown:
            assistant = self.chat.assistant_message(data['message_id'])
            click.echo()
            self.console.print(assistant.body.renderable)
