import asyncio
import logging
from pathlib import Path

import click

from mirror_engine import MirrorConfig, MirrorError, check_permissions
from papunika_mirror import PapunikaMirror


@click.command()
@click.option("--outdir", default="mirror", show_default=True, type=click.Path(file_okay=False), help="Output directory")
@click.option("--tiles/--no-tiles", default=True, help="Mirror overworld and zone tiles")
@click.option("--assets/--no-assets", default=True, help="Mirror the top-level marker images")
@click.option("--zones/--no-zones", default=True, help="Mirror zone data and marker media")
@click.option("--zone-icons/--no-zone-icons", default=True, help="Mirror zone icons")
@click.option("--refresh", is_flag=True, help="Refetch resources even when a cached copy exists")
@click.option("--concurrency", "-c", default=16, show_default=True, type=click.IntRange(min=1), help="Requests in flight per phase")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output")
def cli(outdir, tiles, assets, zones, zone_icons, refresh, concurrency, verbose):
    """Mirror the papunika map into a static directory."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        reuse_cache = check_permissions(Path(outdir))
        config = MirrorConfig(
            outdir=Path(outdir),
            tiles=tiles,
            assets=assets,
            zones=zones,
            zone_icons=zone_icons,
            refresh=refresh,
            reuse_cache=reuse_cache,
            concurrency=concurrency,
        )
        stats = asyncio.run(PapunikaMirror(config).download())
    except MirrorError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Mirrored to {outdir}: {stats.written} written, {stats.reused} reused, {stats.not_found} not found")


if __name__ == "__main__":
    cli()
