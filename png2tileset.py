import argparse
import logging
import sys
from pathlib import Path

from PIL import Image, UnidentifiedImageError

__version__ = "1.0.0"

DEFAULT_TILE_SIZE = 8
DEFAULT_STEM = "my"
DEFAULT_EXT = "png"

# Single-channel modes wider than 8 bits; decoded 16-bit PNG grayscale lands here.
WIDE_MODES = ("I", "I;16", "I;16B", "I;16L", "I;16N")

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TilesetError(ValueError):
    """Base class for failures inside the tileset pipeline."""


class InvalidTileSizeError(TilesetError):
    def __init__(self, tile_size: int) -> None:
        super().__init__(f"Tile size must be a positive integer (got {tile_size})")
        self.tile_size = tile_size


class DimensionMismatchError(TilesetError):
    """Source width or height is not an exact multiple of the tile size."""

    def __init__(self, axis: str, size: int, tile_size: int) -> None:
        super().__init__(
            f"Image {axis} must be a multiple of the tile size "
            f"({axis} {size}px, tile size {tile_size}px)",
        )
        self.axis = axis
        self.size = size
        self.tile_size = tile_size


# ---------------------------------------------------------------------------
# Tile extraction
# ---------------------------------------------------------------------------


def _check_tile_size(tile_size: int) -> None:
    if tile_size <= 0:
        raise InvalidTileSizeError(tile_size)


def extract_tiles(image: Image.Image, tile_size: int) -> list[Image.Image]:
    """Slice *image* into tile_size×tile_size tiles, row-major.

    Rows are visited top-to-bottom and, within a row, tiles left-to-right.
    Raises DimensionMismatchError before any tile is cut if either side of
    the image is not a multiple of *tile_size*.
    """
    _check_tile_size(tile_size)
    if image.width % tile_size != 0:
        raise DimensionMismatchError("width", image.width, tile_size)
    if image.height % tile_size != 0:
        raise DimensionMismatchError("height", image.height, tile_size)

    tiles_per_row = image.width // tile_size
    tiles_per_col = image.height // tile_size

    tiles: list[Image.Image] = []
    for ty in range(tiles_per_col):
        for tx in range(tiles_per_row):
            x0, y0 = tx * tile_size, ty * tile_size
            tiles.append(image.crop((x0, y0, x0 + tile_size, y0 + tile_size)))

    log.info(
        "Source: %d×%d px → %d tiles (%d per row)",
        image.width,
        image.height,
        len(tiles),
        tiles_per_row,
    )
    return tiles


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------


TileKey = tuple[tuple[int, int], str, bytes]


def _tile_key(tile: Image.Image) -> TileKey:
    return tile.size, tile.mode, tile.tobytes()


def tiles_equal(a: Image.Image, b: Image.Image) -> bool:
    """Exact pixel equality: same size, same mode, same bytes."""
    return _tile_key(a) == _tile_key(b)


def deduplicate_tiles(tiles: list[Image.Image]) -> list[Image.Image]:
    """Drop repeated tiles, keeping the first occurrence of each.

    Every tile is compared against all distinct tiles found so far, so the
    result keeps the order in which tiles first appear in *tiles*.
    """
    unique_tiles: list[Image.Image] = []
    # Cached once per unique tile
    unique_keys: list[TileKey] = []

    for tile in tiles:
        key = _tile_key(tile)
        if not any(key == seen for seen in unique_keys):
            unique_tiles.append(tile)
            unique_keys.append(key)

    log.info(
        "Deduplication: %d duplicates removed, %d unique tiles remain",
        len(tiles) - len(unique_tiles),
        len(unique_tiles),
    )
    return unique_tiles


# ---------------------------------------------------------------------------
# Packing
# ---------------------------------------------------------------------------


def find_canvas_size(tile_count: int, tile_size: int) -> tuple[int, int]:
    """Pick a tile-aligned (width, height) with the smallest perimeter.

    The search is bounded by a one-dimensional pixel budget of
    ``tile_count * tile_size``.  Both candidate sides range over
    ``[0, budget)`` and a candidate must cover ``budget * tile_size`` pixels.
    Heights are scanned in the outer loop and widths in the inner one; a
    candidate only wins on a strictly smaller ``width + height``, so ties keep
    the pair found first.  A single row of tiles is the starting best and is
    returned unchanged when nothing beats it.
    """
    _check_tile_size(tile_size)
    budget = tile_count * tile_size
    width, height = budget, tile_size

    # Sides that are not multiples of tile_size never qualify, so stepping by
    # tile_size visits the qualifying candidates in the same order.
    for cand_h in range(0, budget, tile_size):
        for cand_w in range(0, budget, tile_size):
            if cand_h * cand_w >= budget * tile_size and cand_w + cand_h < width + height:
                width, height = cand_w, cand_h
                log.debug("Canvas candidate: %d×%d px", width, height)

    return width, height


def pack_tiles(tiles: list[Image.Image], tile_size: int) -> Image.Image:
    """Composite *tiles* onto a near-square RGBA canvas, row-major."""
    width, height = find_canvas_size(len(tiles), tile_size)
    canvas = Image.new("RGBA", (width, height))

    x = y = 0
    for tile in tiles:
        if x == width:
            x = 0
            y += tile_size
        canvas.paste(to_rgba(tile), (x, y))
        x += tile_size

    log.info(
        "Tileset canvas (%d tiles, %d×%d px)",
        len(tiles),
        width,
        height,
    )
    return canvas


def to_rgba(image: Image.Image) -> Image.Image:
    """Convert to 8-bit RGBA, scaling wide grayscale down instead of clipping."""
    if image.mode == "RGBA":
        return image
    if image.mode in WIDE_MODES:
        image = image.convert("I").point(lambda v: v / 256).convert("L")
    return image.convert("RGBA")


def make_tileset(image: Image.Image, tile_size: int) -> Image.Image:
    """Run the whole pipeline: extract, deduplicate, pack.

    Wide grayscale sources keep their full depth until compositing, so tiles
    are compared at source precision.
    """
    if image.mode in WIDE_MODES:
        log.info("Source mode: %s (scaled to 8 bits when packed)", image.mode)
    elif image.mode != "RGBA":
        log.info("Source mode: %s (converted to RGBA)", image.mode)
        image = image.convert("RGBA")
    tiles = extract_tiles(image, tile_size)
    tiles = deduplicate_tiles(tiles)
    return pack_tiles(tiles, tile_size)


# ---------------------------------------------------------------------------
# Output naming
# ---------------------------------------------------------------------------


def default_output_name(
    input_path: str | Path,
    tile_size: int,
    ext: str = DEFAULT_EXT,
) -> str:
    stem = Path(input_path).stem
    if stem in ("", ".."):
        stem = DEFAULT_STEM
    return f"{stem}-tileset-{tile_size}x{tile_size}.{ext}"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="png2tileset",
        description="Converts png images (tilemaps) into png tilesets.",
    )
    parser.add_argument(
        "file",
        help="Tilemap image to convert",
    )
    parser.add_argument(
        "-o",
        "--output",
        default=None,
        metavar="PATH",
        help="Output file path (default: <stem>-tileset-<N>x<N>.png)",
    )
    parser.add_argument(
        "-s",
        "--size",
        type=int,
        default=DEFAULT_TILE_SIZE,
        metavar="N",
        help=f"Tile size in pixels (default: {DEFAULT_TILE_SIZE})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug-level logging (includes canvas search steps)",
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def load_image(in_path: Path) -> Image.Image:
    """Open and fully decode *in_path*, detached from the file handle."""
    with Image.open(in_path) as image:
        image.load()
        return image.copy()


def save_tileset(tileset: Image.Image, out_path: Path) -> None:
    tileset.save(out_path)
    log.info(
        "Tileset image (%d×%d px) saved to %s",
        tileset.width,
        tileset.height,
        out_path,
    )


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    if args.size <= 0:
        parser.error("-s/--size must be a positive integer")

    in_path = Path(args.file)
    try:
        source = load_image(in_path)
    except FileNotFoundError:
        log.exception("File '%s' not found.", in_path)
        sys.exit(1)
    except UnidentifiedImageError:
        log.exception("File '%s' is not a readable image.", in_path)
        sys.exit(1)
    except OSError:
        log.exception("Cannot read '%s'.", in_path)
        sys.exit(1)

    try:
        tileset = make_tileset(source, args.size)
    except TilesetError:
        log.exception("Cannot build a tileset from '%s'.", in_path)
        sys.exit(1)

    out_path = Path(args.output or default_output_name(in_path, args.size))
    try:
        save_tileset(tileset, out_path)
    except (OSError, ValueError):
        log.exception("Failed to save the tileset image to '%s'.", out_path)
        sys.exit(1)


if __name__ == "__main__":
    main()
