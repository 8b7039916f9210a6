"""
Command Line Interface for minibox.
"""
import sys
import click
from ..BUILDERS.container_builder import ContainerBuilder
from ..errors import MiniboxError
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MANAGERS.lifecycle_manager import LifecycleManager
from ..MODELS.store import Store
from ..REGISTRY.image_store import ImageStore
from ..REGISTRY.registry_client import RegistryClient
from ..RUNNERS.container_runner import ContainerRunner


def format_size(size_bytes: float) -> str:
    """Format a size in bytes to human readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} PB"


def fail(error: Exception):
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.group()
@click.option('--root', default=None, help='Store root directory (default: ~/.minibox)')
@click.option('--env-file', default='.env', help='Environment file with MINIBOX_* settings')
@click.pass_context
def cli(ctx, root, env_file):
    """
    minibox - a minimal container runtime.

    Pulls images from a registry and runs commands in containers built from them.
    """
    ctx.ensure_object(dict)
    config = EnvironmentManager(env_file=env_file).load_config(store_root=root)
    store = Store.at(config.store_root)
    image_store = ImageStore(store)

    ctx.obj['config'] = config
    ctx.obj['registry'] = RegistryClient(config)
    ctx.obj['image_store'] = image_store
    ctx.obj['builder'] = ContainerBuilder(store, image_store)
    ctx.obj['runner'] = ContainerRunner(store)
    ctx.obj['lifecycle'] = LifecycleManager(store, image_store)


@cli.command()
@click.argument('image')
@click.pass_context
def pull(ctx, image):
    """Pull an image from the registry."""
    try:
        ctx.obj['registry'].pull_image(image, ctx.obj['image_store'])
    except (MiniboxError, ValueError, OSError) as e:
        fail(e)


@cli.command()
@click.argument('image')
@click.pass_context
def create(ctx, image):
    """Create a container from a pulled image and print its id."""
    try:
        container = ctx.obj['builder'].build(image)
    except (MiniboxError, ValueError, OSError) as e:
        fail(e)
    click.echo(container.id)


@cli.command(context_settings={'ignore_unknown_options': True})
@click.argument('container_id')
@click.argument('command', nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def run(ctx, container_id, command):
    """Run a command inside a container."""
    try:
        exit_code = ctx.obj['runner'].run(container_id, list(command))
    except MiniboxError as e:
        fail(e)
    sys.exit(exit_code)


@cli.command()
@click.pass_context
def images(ctx):
    """List pulled images."""
    click.echo(f"{'IMAGE':30} {'TAG':15} {'LAYERS':>6} {'SIZE':>10}  CREATED")
    for image in ctx.obj['lifecycle'].list_images():
        ref = image.reference
        layers = str(len(image.layers)) if image.complete else "partial"
        created = image.created.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"{ref.name:30} {ref.tag:15} {layers:>6} {format_size(image.size):>10}  {created}")


@cli.command()
@click.argument('image')
@click.pass_context
def rmi(ctx, image):
    """Remove a pulled image."""
    try:
        removed = ctx.obj['lifecycle'].delete_image(image)
    except (MiniboxError, ValueError, OSError) as e:
        fail(e)
    if removed:
        click.echo(f"Removed image {image}")
    else:
        click.echo(f"Image {image} not found")


@cli.command()
@click.pass_context
def ps(ctx):
    """List containers."""
    click.echo(f"{'CONTAINER ID':45} {'IMAGE':30} CREATED")
    for container in ctx.obj['lifecycle'].list_containers():
        created = container.created_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"{container.id:45} {str(container.image):30} {created}")


@cli.command()
@click.argument('container_id')
@click.pass_context
def rm(ctx, container_id):
    """Remove a container."""
    try:
        removed = ctx.obj['lifecycle'].delete_container(container_id)
    except (MiniboxError, OSError) as e:
        fail(e)
    if removed:
        click.echo(f"Removed container {container_id}")
    else:
        click.echo(f"Container {container_id} not found")


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def prune(ctx, yes):
    """Remove all containers and images."""
    def confirm():
        return yes or click.confirm("This removes ALL containers and images. Continue?", default=False)

    report = ctx.obj['lifecycle'].prune(confirm)
    if report is None:
        click.echo("Aborted.")
        return

    click.echo(f"Removed {report.containers_removed} containers and {report.images_removed} images.")
    for target in report.failures:
        click.echo(f"Failed to remove {target}", err=True)
    if report.failures:
        sys.exit(1)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})

if __name__ == '__main__':
    main()
