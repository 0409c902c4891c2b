import asyncio

import click

from config_manager import ConfigManager
from core.context_attachment import SubmitMode
from core.session_builder import SessionBuilder


@click.group(invoke_without_command=True)
@click.option('-c', '--conf', default=None, help='Path to a custom configuration file')
@click.option('-m', '--model', default='', help='Model to use for completion')
@click.option('-t', '--temperature', default='', help='Temperature to use for completion')
@click.option('-v', '--verbose', default=False, is_flag=True, help='Show session parameters')
@click.pass_context
def cli(ctx, conf, model, temperature, verbose):
    """
    the main entry point for the CLI click interface
    """
    ctx.ensure_object(dict)

    try:
        config_manager = ConfigManager(conf)
    except FileNotFoundError as e:
        raise click.ClickException(str(e))
    ctx.obj['CONFIG_MANAGER'] = config_manager
    ctx.obj['BUILDER'] = SessionBuilder(config_manager)

    options = {}
    if model:
        # Fail fast on an unknown model and use the display name internally
        normalized = config_manager.create_session_config().normalize_model_name(model)
        if not normalized:
            raise click.ClickException(
                f"Unknown model '{model}'. Run 'assistant-chat list-models' to see available models."
            )
        options['model'] = normalized
    if temperature:
        try:
            options['temperature'] = float(temperature)
        except ValueError:
            raise click.BadParameter(f"'{temperature}' is not a number", param_hint='--temperature')
    ctx.obj['OPTIONS'] = options
    ctx.obj['VERBOSE'] = verbose

    if ctx.invoked_subcommand is None:
        raise click.UsageError(cli.get_help(ctx))


@cli.command()
@click.option('--mode', 'submit_mode', type=click.Choice([m.value for m in SubmitMode]),
              default=SubmitMode.SIMPLE.value, help='What context to attach to each submission')
@click.option('--markdown/--stream', default=False, help='Render replies as Markdown once complete')
@click.pass_context
def chat(ctx, submit_mode, markdown):
    """Start an interactive chat"""
    builder = ctx.obj['BUILDER']
    options = ctx.obj.get('OPTIONS', {})
    try:
        session = builder.build(**options)
    except RuntimeError as e:
        raise click.ClickException(str(e))

    if ctx.obj.get('VERBOSE'):
        for key, value in sorted(session.config.get_params(session.model).items()):
            click.echo(f"{key} = {value}")
        click.echo()

    from modes.chat_mode import ChatMode
    ChatMode(session, mode=submit_mode, markdown=markdown).start()


@cli.command()
@click.pass_context
@click.option('-a', '--all', 'showall', is_flag=True, help="Show all models")
@click.option('-d', '--details', is_flag=True, help="Show model details")
def list_models(ctx, showall, details):
    """
    list the available models
    """
    config = ctx.obj['CONFIG_MANAGER'].create_session_config()
    models = config.list_models(showall=showall)

    for section, options in models.items():
        if details:
            click.echo()
            click.echo(f'[ {section} ]')
            for option, value in options.items():
                click.echo(f'{option} = {value}')
        elif options.get('default'):
            click.echo(f'{section} (default)')
        else:
            click.echo(section)


@cli.command()
@click.option('-a', '--all', 'showall', is_flag=True, help="Show all providers")
@click.pass_context
def list_providers(ctx, showall):
    """
    list the available providers
    """
    config = ctx.obj['CONFIG_MANAGER'].create_session_config()
    default_model = config.default_model()
    default_provider = config.get_provider_for_model(default_model) if default_model else None
    for provider in config.list_providers(showall=showall):
        if provider == default_provider:
            click.echo(f'{provider} (default w/ {default_model})')
        else:
            click.echo(provider)


@cli.command()
@click.option('-r', '--root', default=None, help='Project root to index (overrides [RAG].root)')
@click.option('-i', '--index', 'index_name', default=None, help='Index name (overrides [RAG].index)')
@click.pass_context
def index(ctx, root, index_name):
    """
    build or refresh the project index used by codebase mode
    """
    from rag.fs_utils import load_rag_settings
    from rag.indexer import update_index

    builder = ctx.obj['BUILDER']
    config = builder.config_manager.create_session_config(ctx.obj.get('OPTIONS', {}))
    settings = load_rag_settings(config)
    if not settings.vector_db:
        raise click.ClickException("No [RAG].vector_db configured")
    try:
        embed = builder.build_embedder(config)
    except RuntimeError as e:
        raise click.ClickException(str(e))
    if embed is None:
        raise click.ClickException("The configured provider cannot create embeddings")

    stats = asyncio.run(update_index(
        index_name=index_name or settings.index,
        root_path=root or settings.root,
        vector_db=settings.vector_db,
        embed_fn=embed,
        embedding_model=settings.embedding_model,
        exts=settings.exts,
        max_bytes=settings.max_bytes,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
    ))
    if stats['skipped']:
        click.echo(f"Index up to date: {stats['files']} files, {stats['chunks']} chunks ({stats['index_dir']})")
    else:
        click.echo(f"Indexed {stats['files']} files, {stats['chunks']} chunks, "
                   f"{stats['embedded']} embedded ({stats['index_dir']})")


# take care of business
if __name__ == "__main__":
    cli(obj={})
