"""
Command Line Interface for cpull.
"""
import logging
import sys

import click

from ..exceptions import CpullError
from ..MODELS.store_config import load_config
from ..RUNNERS.pull_runner import PullEvent, PullRunner
from ..STORE.image_store import ImageStore
from ..STORE.layer_store import LayerStore


@click.group()
@click.option('--config', '-c', 'config_file', default=None, help='Config file path')
@click.option('--image-root', default=None, help='Directory of the image store')
@click.option('--layer-root', default=None, help='Directory of the layer store')
@click.option('--verbose', '-v', is_flag=True, help='Show debug logging')
@click.pass_context
def cli(ctx, config_file, image_root, layer_root, verbose):
    """
    cpull - pull container images into a local content-addressed store.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    try:
        ctx.obj['config'] = load_config(
            config_file,
            overrides={'image_root': image_root, 'layer_root': layer_root},
        )
    except CpullError as e:
        raise click.ClickException(str(e))


def _print_progress(event: PullEvent, subject: str) -> None:
    if event is PullEvent.IMAGE:
        click.echo(f"Pulling image: {subject}")
    elif event is PullEvent.IMAGE_CACHED:
        click.echo("Image found in cache")
    elif event is PullEvent.LAYER:
        click.echo(f"Pulling layer: {subject.partition(':')[2]}")
    elif event is PullEvent.LAYER_PULLED:
        click.echo("Layer pulled")
    elif event is PullEvent.LAYER_CACHED:
        click.echo("Layer found in cache")


@cli.command()
@click.argument('image')
@click.pass_context
def pull(ctx, image):
    """Pull an image from a registry"""
    try:
        runner = PullRunner(ctx.obj['config'], progress=_print_progress)
        result = runner.pull(image)
    except CpullError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if result.missing_layers:
        click.echo(
            f"Warning: {len(result.missing_layers)} layer(s) of this image are missing from the layer store",
            err=True,
        )


@cli.command()
@click.pass_context
def images(ctx):
    """List cached images"""
    store = ImageStore(ctx.obj['config'])
    for digest in store.list_images():
        click.echo(digest)


@cli.command()
@click.pass_context
def layers(ctx):
    """List cached layers"""
    store = LayerStore(ctx.obj['config'])
    for digest in store.list_layers():
        click.echo(digest)


@cli.command()
@click.pass_context
def clean(ctx):
    """Remove staging directories and unused lock files left by pulls"""
    config = ctx.obj['config']
    try:
        removed = ImageStore(config).clean_staging() + LayerStore(config).clean_staging()
    except CpullError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Removed {removed} staging director{'y' if removed == 1 else 'ies'}.")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})

if __name__ == '__main__':
    main()
