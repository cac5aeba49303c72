"""Image operations used by pipeline steps (crop, resize, outpaint canvas)."""

import io
from typing import Dict, List, Tuple

from PIL import Image, ImageDraw, ImageFilter


def open_image(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def to_png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def image_size(data: bytes) -> Tuple[int, int]:
    return open_image(data).size


def bbox_to_pixels(box: List[float], width: int, height: int) -> Dict[str, int]:
    """
    Convert a [top, left, bottom, right] box on a 0-1000 scale to pixels.

    Args:
        box: Normalized box
        width: Image width in pixels
        height: Image height in pixels

    Returns:
        Dict with x, y, width, height clamped to the image
    """
    top, left, bottom, right = box
    x = int(left / 1000 * width)
    y = int(top / 1000 * height)
    w = int(round((right - left) / 1000 * width))
    h = int(round((bottom - top) / 1000 * height))
    w = max(1, min(w, width - x))
    h = max(1, min(h, height - y))
    return {"x": x, "y": y, "width": w, "height": h}


def crop_to_bbox(data: bytes, bbox: Dict[str, int]) -> bytes:
    """Crop an image to a pixel bbox and return PNG bytes."""
    img = open_image(data)
    region = (bbox["x"], bbox["y"], bbox["x"] + bbox["width"], bbox["y"] + bbox["height"])
    return to_png(img.crop(region))


def fit_within(data: bytes, max_edge: int) -> bytes:
    """Downscale so the longest edge is at most ``max_edge``. Never upscales."""
    img = open_image(data)
    if max(img.size) > max_edge:
        img.thumbnail((max_edge, max_edge), Image.LANCZOS)
    return to_png(img)


def parse_aspect_ratio(aspect_ratio: str) -> float:
    """Parse "W:H" into a float ratio."""
    try:
        w, h = (float(part) for part in aspect_ratio.split(":"))
    except ValueError:
        raise ValueError(f"Invalid aspect ratio: {aspect_ratio}")
    if w <= 0 or h <= 0:
        raise ValueError(f"Invalid aspect ratio: {aspect_ratio}")
    return w / h


def outpaint_canvas(data: bytes, aspect_ratio: str) -> Tuple[bytes, bytes]:
    """
    Pad an image out to a target aspect ratio for outpainting.

    The original image is centred on a larger canvas. The mask is white where
    new pixels must be generated and black over the original, with a feathered
    border so the generated region blends in.

    Returns:
        (canvas PNG bytes, mask PNG bytes)
    """
    img = open_image(data).convert("RGB")
    orig_w, orig_h = img.size
    target = parse_aspect_ratio(aspect_ratio)

    if target > orig_w / orig_h:
        new_w, new_h = round(orig_h * target), orig_h
    else:
        new_w, new_h = orig_w, round(orig_w / target)

    x_off = (new_w - orig_w) // 2
    y_off = (new_h - orig_h) // 2

    canvas = Image.new("RGB", (new_w, new_h), (255, 255, 255))
    canvas.paste(img, (x_off, y_off))

    feather = max(4, round(min(orig_w, orig_h) * 0.01))
    mask = Image.new("L", (new_w, new_h), 255)
    ImageDraw.Draw(mask).rectangle(
        [x_off, y_off, x_off + orig_w - 1, y_off + orig_h - 1],
        fill=0,
    )
    mask = mask.filter(ImageFilter.GaussianBlur(feather))

    return to_png(canvas), to_png(mask)
