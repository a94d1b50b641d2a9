"""
Rendu des images de captcha (Pillow).

Fonction pure de la difficulté : retourne (octets PNG, réponse attendue).
Alphabet sans glyphes ambigus (0/O, 1/I/L) pour rester lisible sans aide.
"""
from __future__ import annotations

import io
import random
import secrets
from typing import Optional, Tuple

from PIL import Image, ImageDraw, ImageFont

ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
EASY_LENGTH = 4
HARD_LENGTH = 6

_GLYPH_SCALE = 4
_CELL_W = 40
_HEIGHT = 70


def generate_answer(length: int) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def _glyph(char: str, font, rng: random.Random, max_angle: int) -> Image.Image:
    # Police bitmap minuscule, agrandie puis tournée
    small = Image.new("L", (10, 14), 0)
    ImageDraw.Draw(small).text((1, 1), char, fill=255, font=font)
    big = small.resize((10 * _GLYPH_SCALE, 14 * _GLYPH_SCALE), Image.Resampling.NEAREST)
    return big.rotate(rng.uniform(-max_angle, max_angle), resample=Image.Resampling.BICUBIC, expand=True)


def render_captcha(difficult: bool = False, *, answer: Optional[str] = None) -> Tuple[bytes, str]:
    """
    Dessine un captcha.
    Args :
        difficult : 6 caractères + bruit dense au lieu de 4 caractères
        answer : réponse imposée (tests) ; aléatoire sinon
    """
    text = answer or generate_answer(HARD_LENGTH if difficult else EASY_LENGTH)
    rng = random.Random(secrets.randbits(64))
    width = _CELL_W * len(text) + 30
    img = Image.new("RGB", (width, _HEIGHT), (245, 245, 240))
    draw = ImageDraw.Draw(img)
    font = ImageFont.load_default()

    lines = 12 if difficult else 4
    dots = 600 if difficult else 150
    max_angle = 30 if difficult else 12

    for i, char in enumerate(text):
        glyph = _glyph(char, font, rng, max_angle)
        color = tuple(rng.randint(10, 110) for _ in range(3))
        x = 15 + i * _CELL_W + rng.randint(-3, 3)
        y = max(0, (_HEIGHT - glyph.height) // 2 + rng.randint(-6, 6))
        img.paste(Image.new("RGB", glyph.size, color), (x, y), glyph)

    for _ in range(lines):
        start = (rng.randint(0, width), rng.randint(0, _HEIGHT))
        end = (rng.randint(0, width), rng.randint(0, _HEIGHT))
        draw.line([start, end], fill=tuple(rng.randint(60, 180) for _ in range(3)), width=rng.randint(1, 2))
    for _ in range(dots):
        draw.point((rng.randint(0, width - 1), rng.randint(0, _HEIGHT - 1)),
                   fill=tuple(rng.randint(0, 200) for _ in range(3)))

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue(), text


__all__ = ["render_captcha", "generate_answer", "ALPHABET"]
