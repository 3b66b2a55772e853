import argparse
import csv
import logging
import os
import sys

from tqdm import tqdm

from .analysis import LumaSampler, NitsSampler, summarize
from .config import PipelineConfig, load_config
from .errors import FramePipeError
from .pipeline import LAYOUTS, frame_timestamp, run_pipeline
from .utils import ensure_dir, format_duration, set_ffmpeg_env
from .video_io import probe_video_info

log = logging.getLogger(__name__)


def build_parser():
    ap = argparse.ArgumentParser(prog='framepipe', description='Sample per-frame brightness of a video through ffmpeg.')
    ap.add_argument('video', help='path to video file')
    ap.add_argument('--config', help='PipelineConfig JSON; command-line flags override it')
    ap.add_argument('--scale', default=None, help='ffmpeg scale expression, e.g. 1280:-2')
    ap.add_argument('--keyframes', action='store_true', help='decode keyframes only (-skip_frame nokey)')
    ap.add_argument('--max-frames', type=int, default=None, help='stop after N frames')
    ap.add_argument('--workers', type=int, default=None, help='worker threads (default: cores - 2, min 2)')
    ap.add_argument('--queue', type=int, default=None, help='frames buffered between decoder and workers')
    ap.add_argument('--layout', default=None, choices=sorted(LAYOUTS), help='raw pixel format requested from ffmpeg')
    ap.add_argument('--metric', default='luma', choices=['luma', 'nits'], help='Rec.709 luma (SDR) or PQ nits (HDR)')
    ap.add_argument('--bt709', action='store_true', help='BT.709 matrix for yuv420p input')
    ap.add_argument('--full-range', action='store_true', help='treat YUV input as full range')
    ap.add_argument('--no-hwaccel', action='store_true', help='do not pass -hwaccel auto')
    ap.add_argument('--csv', default=None, help='write frame,time_secs,value rows here')
    ap.add_argument('--ffmpeg-dir', default=None, help='folder containing ffmpeg/ffprobe')
    ap.add_argument('-v', '--verbose', action='store_true')
    return ap


def config_from_args(args) -> PipelineConfig:
    cfg = load_config(args.config) if args.config else PipelineConfig()
    if args.scale is not None:
        cfg.scale = args.scale
    if args.keyframes:
        cfg.keyframes_only = True
    if args.max_frames is not None:
        cfg.max_frames = args.max_frames
    if args.workers is not None:
        cfg.workers = args.workers
    if args.queue is not None:
        cfg.queue_capacity = args.queue
    if args.layout is not None:
        cfg.layout = args.layout
    if args.bt709:
        cfg.bt709 = True
    if args.full_range:
        cfg.limited_range = False
    if args.no_hwaccel:
        cfg.hwaccel = False
    return cfg


def main(argv=None):
    args = build_parser().parse_args(argv)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    if args.ffmpeg_dir:
        applied = set_ffmpeg_env(args.ffmpeg_dir)
        log.info("ffmpeg dir %s → %s", args.ffmpeg_dir, applied or "nothing found")

    cfg = config_from_args(args)
    sampler_cls = NitsSampler if args.metric == 'nits' else LumaSampler
    sampler = sampler_cls(bt709=cfg.bt709, limited_range=cfg.limited_range)

    try:
        info = probe_video_info(args.video)
        pbar = tqdm(total=cfg.max_frames if cfg.max_frames and cfg.max_frames > 0 else None, desc='processing')
        try:
            report = run_pipeline(
                args.video,
                sampler,
                cfg,
                info=info,
                on_frame_done=lambda _f: pbar.update(1),
            )
        finally:
            pbar.close()
    except (FramePipeError, FileNotFoundError) as e:
        log.error("%s", e)
        return 1

    s = summarize(sampler.results)
    print(f"Processed {report.processed} frames in {format_duration(report.elapsed_sec)}, FPS = {report.fps:.2f}"
          + (" (cancelled)" if report.cancelled else ""))
    if report.failures:
        print(f"Failed frames: {len(report.failures)}")
    if args.metric == 'nits':
        print(f"Luminance ({s.count} samples) avg: {s.average:.1f} nits, max: {s.maximum:.1f} nits")
    else:
        print(f"Brightness ({s.count} samples) avg: {s.average:.1%}, max: {s.maximum:.1%}")
        print(f"Brightness (8-bit) avg: {round(s.average * 255)}, max: {round(s.maximum * 255)}")

    if args.csv:
        ensure_dir(os.path.dirname(os.path.abspath(args.csv)))
        fps = report.info.fps
        with open(args.csv, 'w', newline='') as csv_f:
            writer = csv.writer(csv_f)
            writer.writerow(['frame', 'time_secs', 'value'])
            for idx, value in sampler.results.items():
                writer.writerow([idx, f"{frame_timestamp(idx, fps):.3f}", f"{value:.6f}"])
        print(f"Index: {args.csv}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
