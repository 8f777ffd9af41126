import logging
from datetime import datetime
from pathlib import Path

from PIL import Image, ImageDraw, ImageFont

logger = logging.getLogger(__name__)

WIDTH, HEIGHT = 800, 600
BACKGROUND = (30, 30, 30)
TEXT = (255, 255, 255)
FONT_CANDIDATES = ("DejaVuSans.ttf", "arial.ttf", "Arial.ttf")


def load_font(size: int):
    for candidate in FONT_CANDIDATES:
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    logger.debug("No TrueType font found, using the Pillow default")
    return ImageFont.load_default()


def generate_summary_image(total_countries: int, top_countries, refreshed_at: datetime, path) -> Path:
    """Draw the refresh summary PNG at `path` and return the path.

    `top_countries` is an ordered sequence of objects with `name` and
    `estimated_gdp`; only the first five are drawn.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    im = Image.new("RGB", (WIDTH, HEIGHT), BACKGROUND)
    draw = ImageDraw.Draw(im)
    title_font = load_font(36)
    body_font = load_font(24)

    title = "Country Data Summary"
    draw.text(((WIDTH - draw.textlength(title, font=title_font)) // 2, 35), title, fill=TEXT, font=title_font)
    draw.text((50, 110), f"Total Countries: {total_countries}", fill=TEXT, font=body_font)
    draw.text((50, 150), f"Last Refreshed: {refreshed_at:%Y-%m-%d %H:%M:%S} UTC", fill=TEXT, font=body_font)
    draw.text((50, 210), "Top 5 Countries by Estimated GDP:", fill=TEXT, font=body_font)

    y = 250
    for idx, c in enumerate(list(top_countries)[:5], start=1):
        gdp = "N/A" if c.estimated_gdp is None else f"{c.estimated_gdp:.2f}"
        draw.text((70, y), f"{idx}. {c.name} (GDP: {gdp})", fill=TEXT, font=body_font)
        y += 30

    im.save(path, "PNG")
    logger.info("Summary image written to %s", path)
    return path
