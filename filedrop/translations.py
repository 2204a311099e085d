from types import MappingProxyType
from typing import Mapping, Optional

DEFAULT_LANGUAGE = "en"

_TABLES = {
    "en": {
        "title": "LAN File Drop",
        "header": "LAN File Drop",
        "current_user": "Current folder:",
        "copy": "Copy",
        "copied": "Copied!",
        "logout_button": "Log out",
        "files_upload_label": "Select files to upload:",
        "folder_upload_label": "Select a folder to upload:",
        "upload_button": "Upload",
        "file_list_header": "Uploaded Files",
        "no_files": "No files uploaded yet.",
        "load_error": "Could not load file list.",
        "usage_summary": "{count} file(s), {size}",
        "file_not_selected": "No file selected.",
        "too_many_files": "Too many files in one upload (limit {limit}).",
        "upload_success": "Uploaded {count} file(s).",
        "upload_partial": "Uploaded {stored} file(s); {failed} failed.",
        "upload_failed": "Upload failed for {name}: {detail}",
        "upload_busy": "The server is busy with other uploads. Please try again shortly.",
        "upload_too_large": "The upload exceeds the allowed size limit.",
        "logout_modal_title": "Log out?",
        "logout_confirm": "Logging out deletes every file in this folder. This cannot be undone.",
        "logout_modal_cancel": "Cancel",
        "logout_modal_confirm": "Log out and delete",
        "logged_out": "You have been logged out.",
        "login_header": "Log in",
        "login_required": "Please log in to continue.",
        "username_label": "Username",
        "password_label": "Password",
        "login_button": "Log in",
        "invalid_creds_error": "Username must be 3-20 letters, digits, '_' or '-', and the password at least 6 characters.",
        "session_expired": "Your session has expired or the form was invalid. Please try again.",
        "rate_limited": "Too many requests. Please try again later.",
        "not_found": "Sorry, can't find that!",
        "back_home": "Back to your files",
        "server_started": "Server started!",
        "listening_on": "Listening on port {port}",
        "access_instructions": "Access the server at:",
        "localhost": "Local:",
        "lan": "LAN:",
        "no_lan": "(No LAN IP found. Please check your network.)",
    },
    "zh": {
        "title": "局域网文件投递",
        "header": "局域网文件投递",
        "current_user": "当前文件夹：",
        "copy": "复制",
        "copied": "已复制！",
        "logout_button": "退出登录",
        "files_upload_label": "选择要上传的文件：",
        "folder_upload_label": "选择要上传的文件夹：",
        "upload_button": "上传",
        "file_list_header": "已上传文件",
        "no_files": "还没有上传文件",
        "load_error": "无法加载文件列表",
        "usage_summary": "{count} 个文件，{size}",
        "file_not_selected": "没有选择文件",
        "too_many_files": "单次上传的文件过多（上限 {limit}）。",
        "upload_success": "已上传 {count} 个文件。",
        "upload_partial": "已上传 {stored} 个文件，{failed} 个失败。",
        "upload_failed": "{name} 上传失败：{detail}",
        "upload_busy": "服务器正忙于处理其他上传，请稍后再试。",
        "upload_too_large": "上传内容超过大小限制。",
        "logout_modal_title": "确认退出？",
        "logout_confirm": "退出登录将删除此文件夹中的所有文件，且无法恢复。",
        "logout_modal_cancel": "取消",
        "logout_modal_confirm": "退出并删除",
        "logged_out": "您已退出登录。",
        "login_header": "登录",
        "login_required": "请先登录。",
        "username_label": "用户名",
        "password_label": "密码",
        "login_button": "登录",
        "invalid_creds_error": "用户名需为 3-20 位字母、数字、'_' 或 '-'，密码至少 6 位。",
        "session_expired": "会话已过期或表单无效，请重试。",
        "rate_limited": "请求过于频繁，请稍后再试。",
        "not_found": "抱歉，找不到该页面！",
        "back_home": "返回文件列表",
        "server_started": "服务器已启动！",
        "listening_on": "正在监听 {port} 端口",
        "access_instructions": "请在浏览器中访问以下地址：",
        "localhost": "本机：",
        "lan": "局域网：",
        "no_lan": "(未找到局域网IP, 请手动查询本机IP)",
    },
}

TRANSLATIONS: Mapping[str, Mapping[str, str]] = MappingProxyType(
    {language: MappingProxyType(dict(table)) for language, table in _TABLES.items()}
)
del _TABLES


def detect_language(accept_language: Optional[str]) -> str:
    """Pick ``zh`` when the client mentions it, otherwise English."""

    if accept_language and "zh" in accept_language.lower():
        return "zh"
    return DEFAULT_LANGUAGE


def translations_for(language: Optional[str]) -> Mapping[str, str]:
    return TRANSLATIONS.get(language or DEFAULT_LANGUAGE, TRANSLATIONS[DEFAULT_LANGUAGE])
