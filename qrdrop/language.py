"""Language support primitives for qrdrop CLI prompts with Rich styling."""

from __future__ import annotations

from typing import Dict, Optional

from rich.text import Text

# Supported interface languages
LANGUAGES: Dict[str, str] = {
    "en": "English",
    "zh": "中文",
}

MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "select_language": "Select interface language:",
        "prompt_language_choice": "Enter language code [{default}]: ",
        "invalid_choice": "Invalid choice. Try again.",
        "cli_description": "Send files directly between two devices, set up by scanning QR codes",
        "cli_usage": "%(prog)s [command]",
        "cli_usage_prefix": "usage:",
        "cli_error": "Error: {error}",
        "cli_commands_title": "commands",
        "cli_positionals_title": "positional arguments",
        "cli_optionals_title": "optional arguments",
        "cli_version_help": "show qrdrop version and exit",
        "cli_version_output": "qrdrop version {version}",
        "cli_help_help": "show this help message and exit",
        "cli_quiet_help": "Only print errors",
        "cli_network_help": "Override the network mode for this session (local|internet)",
        "cli_send_help": "Create a connection offer and send files once the peer answers",
        "cli_send_usage": "%(prog)s <path> [<path> ...]",
        "cli_send_paths_help": "Files to send, in order",
        "cli_receive_help": "Answer a connection offer and save incoming files",
        "cli_receive_dir_help": "Directory for received files in this session",
        "cli_settings_help": "Show or change persistent settings",
        "cli_settings_language_help": "Set interface language (available: {codes})",
        "cli_settings_network_help": "Set network mode: local (same LAN) or internet (STUN)",
        "cli_settings_compress_help": "Compress connection codes (on|off)",
        "cli_settings_dir_help": "Set the default directory for received files",
        "creating_offer": "Preparing connection offer (gathering network candidates)...",
        "creating_answer": "Preparing answer (gathering network candidates)...",
        "show_offer": "Scan this code with the receiving device, or copy the text below.",
        "show_answer": "Show this answer to the sending device, or copy the text below.",
        "part_header": "Code {index} of {total}",
        "copy_hint": "Text:",
        "prompt_answer": "Paste the answer from the receiving device: ",
        "prompt_offer": "Paste the offer from the sending device: ",
        "parts_progress": "Got part {received} of {total}. Paste the next part.",
        "token_invalid": "That code could not be read ({error}). Try again.",
        "token_wrong_role": "Expected an {expected} code but this is an {actual} code. Try again.",
        "waiting_connection": "Waiting for the peer to connect...",
        "connected": "Connected. The data channel is open.",
        "negotiation_failed": "Connection setup failed: {error}",
        "sending": "Sending '{filename}' ({size})...",
        "send_success": "Sent '{filename}'.",
        "send_failed": "Transfer failed: {error}",
        "send_cancelled": "Transfer cancelled.",
        "file_not_found": "Path not found or not a file: {path}",
        "receive_waiting": "Waiting for files; saving to {path}. Press Ctrl+C to stop.",
        "receive_started": "Receiving '{filename}' ({size})...",
        "receive_done": "Saved to {path}",
        "receive_failed": "Transfer failed: {error}",
        "operation_cancelled": "Operation cancelled.",
        "goodbye": "Goodbye!",
        "progress_line": "{percent} {transferred} / {total} ({rate}/s)",
        "settings_header": "Settings: language {language_name} ({language_code}), network {network}, compression {compress}, part size {part_size}, downloads {path}",
        "settings_on": "on",
        "settings_off": "off",
        "settings_language_invalid": "Invalid language code '{value}'. Available: {codes}.",
        "settings_language_updated": "Language updated to {language_name}.",
        "settings_network_invalid": "Invalid network mode '{value}'. Use local or internet.",
        "settings_network_updated": "Network mode set to {network}.",
        "settings_compress_invalid": "Invalid value '{value}'. Use on or off.",
        "settings_compress_updated": "Code compression is now {state}.",
        "settings_download_dir_invalid": "Please enter an absolute path (e.g. /home/user/Downloads).",
        "settings_download_dir_updated": "Default receive directory updated: {path}",
    },
    "zh": {
        "select_language": "选择界面语言：",
        "prompt_language_choice": "输入语言代码 [{default}]：",
        "invalid_choice": "无效选项，请重试。",
        "cli_description": "通过扫描二维码建立连接，在两台设备之间直接传输文件",
        "cli_usage": "%(prog)s [命令]",
        "cli_usage_prefix": "用法:",
        "cli_error": "错误：{error}",
        "cli_commands_title": "命令",
        "cli_positionals_title": "位置参数",
        "cli_optionals_title": "可选参数",
        "cli_version_help": "显示 qrdrop 版本并退出",
        "cli_version_output": "qrdrop 版本 {version}",
        "cli_help_help": "显示帮助信息并退出",
        "cli_quiet_help": "仅输出错误信息",
        "cli_network_help": "本次会话临时使用的网络模式（local|internet）",
        "cli_send_help": "生成连接请求，对方应答后发送文件",
        "cli_send_usage": "%(prog)s <路径> [<路径> ...]",
        "cli_send_paths_help": "按顺序发送的文件",
        "cli_receive_help": "应答连接请求并保存收到的文件",
        "cli_receive_dir_help": "本次会话的文件保存目录",
        "cli_settings_help": "查看或修改持久化设置",
        "cli_settings_language_help": "设置界面语言（可选：{codes}）",
        "cli_settings_network_help": "设置网络模式：local（同一局域网）或 internet（STUN）",
        "cli_settings_compress_help": "压缩连接码（on|off）",
        "cli_settings_dir_help": "设置默认接收目录",
        "creating_offer": "正在生成连接请求（收集网络候选地址）……",
        "creating_answer": "正在生成应答（收集网络候选地址）……",
        "show_offer": "请用接收设备扫描此二维码，或复制下方文本。",
        "show_answer": "请将此应答出示给发送设备，或复制下方文本。",
        "part_header": "第 {index} / {total} 个二维码",
        "copy_hint": "文本：",
        "prompt_answer": "粘贴接收设备的应答：",
        "prompt_offer": "粘贴发送设备的连接请求：",
        "parts_progress": "已收到第 {received} / {total} 部分，请粘贴下一部分。",
        "token_invalid": "无法读取该连接码（{error}），请重试。",
        "token_wrong_role": "需要 {expected} 类型的连接码，但收到的是 {actual}，请重试。",
        "waiting_connection": "等待对方连接……",
        "connected": "已连接，数据通道已打开。",
        "negotiation_failed": "连接建立失败：{error}",
        "sending": "正在发送“{filename}”（{size}）……",
        "send_success": "已发送“{filename}”。",
        "send_failed": "传输失败：{error}",
        "send_cancelled": "传输已取消。",
        "file_not_found": "路径不存在或不是文件：{path}",
        "receive_waiting": "等待接收文件，保存到 {path}。按 Ctrl+C 停止。",
        "receive_started": "正在接收“{filename}”（{size}）……",
        "receive_done": "已保存到 {path}",
        "receive_failed": "传输失败：{error}",
        "operation_cancelled": "操作已取消。",
        "goodbye": "再见！",
        "progress_line": "{percent} {transferred} / {total}（{rate}/s）",
        "settings_header": "设置：语言 {language_name}（{language_code}），网络 {network}，压缩 {compress}，分段大小 {part_size}，下载目录 {path}",
        "settings_on": "开启",
        "settings_off": "关闭",
        "settings_language_invalid": "无效的语言代码“{value}”。可选：{codes}。",
        "settings_language_updated": "界面语言已切换为 {language_name}。",
        "settings_network_invalid": "无效的网络模式“{value}”，请使用 local 或 internet。",
        "settings_network_updated": "网络模式已设置为 {network}。",
        "settings_compress_invalid": "无效的取值“{value}”，请使用 on 或 off。",
        "settings_compress_updated": "连接码压缩已{state}。",
        "settings_download_dir_invalid": "请输入绝对路径（例如 /home/user/Downloads）。",
        "settings_download_dir_updated": "默认接收目录已更新：{path}",
    },
}


def get_message(key: str, language: str, **kwargs: object) -> str:
    """
    Retrieve a formatted message for the requested language.
    Falls back to English when the message or language is missing.
    """

    lang_messages = MESSAGES.get(language, MESSAGES["en"])
    template = lang_messages.get(key, MESSAGES["en"].get(key, key))
    return template.format(**kwargs)


TONE_STYLES: Dict[str, str] = {
    "banner": "bold cyan",
    "heading": "bold bright_cyan",
    "info": "bright_black",
    "success": "bold green",
    "warning": "bold yellow",
    "error": "bold red",
    "prompt": "cyan",
    "debug": "magenta",
}


MESSAGE_TONES: Dict[str, str] = {
    "show_offer": "heading",
    "show_answer": "heading",
    "part_header": "heading",
    "copy_hint": "info",
    "parts_progress": "info",
    "token_invalid": "warning",
    "token_wrong_role": "warning",
    "connected": "success",
    "negotiation_failed": "error",
    "send_success": "success",
    "send_failed": "error",
    "send_cancelled": "warning",
    "file_not_found": "error",
    "receive_done": "success",
    "receive_failed": "error",
    "operation_cancelled": "warning",
    "cli_error": "error",
    "settings_language_invalid": "error",
    "settings_network_invalid": "error",
    "settings_compress_invalid": "error",
    "settings_download_dir_invalid": "error",
}


def render_message(
    key: str,
    language: str,
    *,
    tone: Optional[str] = None,
    **kwargs: object,
) -> Text:
    """Return a Rich Text object for the requested message with consistent styling."""

    message = get_message(key, language, **kwargs)
    text = Text(message)
    resolved_tone = tone or MESSAGE_TONES.get(key)
    if resolved_tone:
        style = TONE_STYLES.get(resolved_tone, resolved_tone)
        if style:
            text.stylize(style)
    return text
