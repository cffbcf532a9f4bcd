"""Shared test fixtures for similarity search tests."""

import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import numpy as np
import cv2
import pytest


def solid_image(rgb, size=48):
    img = np.zeros((size, size, 3), dtype=np.uint8)
    img[:, :] = rgb
    return img


def write_image(path, image_rgb):
    """Write an RGB array as a lossless PNG and return the path as str."""
    cv2.imwrite(str(path), cv2.cvtColor(image_rgb, cv2.COLOR_RGB2BGR))
    return str(path)


@pytest.fixture
def red_square_image():
    """Solid red 48x48 square."""
    return solid_image([255, 0, 0])


@pytest.fixture
def dark_red_square_image():
    """Solid, slightly darker red 48x48 square."""
    return solid_image([240, 0, 0])


@pytest.fixture
def blue_square_image():
    """Solid blue 48x48 square."""
    return solid_image([0, 0, 255])


@pytest.fixture
def vertical_edge_image():
    """Left half black, right half white: a single vertical edge."""
    img = np.zeros((48, 48, 3), dtype=np.uint8)
    img[:, 24:] = 255
    return img


@pytest.fixture
def checkerboard_image():
    """200x200 checkerboard, rich in edges in both directions."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 200
    for y in range(0, 200, 20):
        for x in range(0, 200, 20):
            if (x // 20 + y // 20) % 2 == 0:
                img[y:y+20, x:x+20] = [50, 50, 50]
    return img


@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)


@pytest.fixture
def image_files(tmp_path, red_square_image, dark_red_square_image, blue_square_image):
    """Red, dark red and blue squares saved as PNG files."""
    return {
        "red": write_image(tmp_path / "red.png", red_square_image),
        "dark_red": write_image(tmp_path / "dark_red.png", dark_red_square_image),
        "blue": write_image(tmp_path / "blue.png", blue_square_image),
    }


@pytest.fixture
def image_server(red_square_image):
    """
    Local HTTP server with three routes:
        /red.png   — the red square as PNG
        /slow.png  — the same PNG sent one byte every 0.5s
        anything else — 404
    Yields the base URL.
    """
    ok, encoded = cv2.imencode(".png", cv2.cvtColor(red_square_image, cv2.COLOR_RGB2BGR))
    body = encoded.tobytes()

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path not in ("/red.png", "/slow.png"):
                self.send_error(404)
                return
            self.send_response(200)
            self.send_header("Content-Type", "image/png")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            try:
                if self.path == "/red.png":
                    self.wfile.write(body)
                    return
                for i in range(len(body)):
                    self.wfile.write(body[i:i + 1])
                    self.wfile.flush()
                    time.sleep(0.5)
            except (BrokenPipeError, ConnectionResetError):
                pass

        def log_message(self, format, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()
