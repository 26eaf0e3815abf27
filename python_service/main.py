#!/usr/bin/env python3
"""
Gesture Tree - 手势控制的粒子圣诞树
主入口文件

用法:
    python main.py              # 启动 WebSocket 服务器
    python main.py --debug      # 启动本地预览窗口
"""

import argparse
import asyncio
import logging
import time

import cv2

from config.settings import Config, load_config

logger = logging.getLogger(__name__)


def setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )


def run_debug_mode(config: Config):
    """
    调试模式：本地 OpenCV 预览窗口，不启动 WebSocket 服务器
    """
    from core.capture import CameraCapture
    from core.detector import HandDetector, draw_landmarks
    from core.preview import PreviewRenderer
    from core.scene import TreeScene

    print("=" * 50)
    print("Gesture Tree 调试模式")
    print("=" * 50)
    print("按 'q' 退出")
    print("按 'l' 关闭信件")
    print("按 't' 切换主题")
    print("=" * 50)

    camera = CameraCapture(
        device_id=config.camera.device_id,
        width=config.camera.width,
        height=config.camera.height,
        fps=config.camera.fps,
        mirror=config.camera.mirror
    )

    det = config.detector
    detector = HandDetector(
        model_path=det.model_path,
        min_detection_confidence=det.min_detection_confidence,
        min_presence_confidence=det.min_presence_confidence,
        min_tracking_confidence=det.min_tracking_confidence
    )
    scene = TreeScene(config)
    renderer = PreviewRenderer(config.formation)

    scene.register_callback(
        lambda event: logger.info("[EVENT] %s: %s %s", event.event_type, event.mode.value, event.data)
    )

    if not camera.start():
        logger.error("无法启动摄像头")
        detector.close()
        return

    last = time.monotonic()
    try:
        for frame in camera.read_generator():
            pose = detector.detect(frame.image, frame.timestamp)

            now = time.monotonic()
            dt = now - last
            last = now

            snapshot = scene.step(pose, frame.timestamp, dt)

            thumbnail = draw_landmarks(frame.image, pose)
            output = renderer.render(
                scene.engine,
                snapshot,
                scene.context,
                dt=dt,
                fps=camera.actual_fps,
                thumbnail=thumbnail
            )

            cv2.imshow("Gesture Tree", output)

            key = cv2.waitKey(1) & 0xFF
            if key == ord('q'):
                break
            elif key == ord('l'):
                scene.state_machine.close_letter(frame.timestamp)
            elif key == ord('t'):
                scene.toggle_theme(frame.timestamp)

    finally:
        camera.stop()
        detector.close()
        cv2.destroyAllWindows()
        logger.info("调试模式结束")


def run_server_mode(config: Config):
    """
    服务器模式：启动 WebSocket 服务器
    """
    from server import GestureTreeServer

    print("=" * 50)
    print("Gesture Tree 服务器模式")
    print("=" * 50)

    server = GestureTreeServer(config)

    async def serve():
        try:
            await server.run(host=config.server.host, port=config.server.port)
        finally:
            await server.stop()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("收到中断信号")


def build_config(args: argparse.Namespace) -> Config:
    """读取配置文件，再用命令行参数覆盖"""
    config = load_config(args.config)

    if args.host is not None:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port
    if args.camera is not None:
        config.camera.device_id = args.camera
    if args.text is not None:
        config.glyph.text = args.text
    if args.model is not None:
        config.detector.model_path = args.model
    if args.debug:
        config.debug = True

    return config


def main():
    """主函数"""
    parser = argparse.ArgumentParser(
        description="Gesture Tree - 手势控制的粒子圣诞树",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
    python main.py                        启动 WebSocket 服务器
    python main.py --debug                启动本地预览窗口
    python main.py --port 9000            指定端口号
    python main.py --config tree.json     使用配置文件
    python main.py --text "HELLO"         设置文字模式显示的文字
        """
    )

    parser.add_argument(
        "--debug", "-d",
        action="store_true",
        help="启动调试模式（本地预览窗口）"
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="JSON 配置文件路径"
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="服务器主机地址 (默认: 127.0.0.1)"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="服务器端口 (默认: 8765)"
    )

    parser.add_argument(
        "--camera", "-c",
        type=int,
        default=None,
        help="摄像头设备 ID (默认: 0)"
    )

    parser.add_argument(
        "--text",
        type=str,
        default=None,
        help="文字模式显示的文字 (默认: NOEL)"
    )

    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="hand_landmarker.task 模型路径"
    )

    args = parser.parse_args()
    config = build_config(args)
    setup_logging(config.log_level)

    if config.debug:
        run_debug_mode(config)
    else:
        run_server_mode(config)


if __name__ == "__main__":
    main()
