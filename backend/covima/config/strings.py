# /covima/config/strings.py

# This file contains all user-facing strings, making them easy to manage,
# update, and eventually localize without changing application logic.
# Templates use str.format placeholders.

# --- General ---
GREETING = "¡Hola {nombre}! 👋\n\n¿En qué puedo ayudarte?\n\nEscribe *ayuda* para ver los comandos disponibles."
GREETING_ANONYMOUS_NAME = "hermano/a"
UNKNOWN_INTENT = "🤔 No entendí tu mensaje. Escribe *ayuda* para ver los comandos disponibles."
FLOW_CANCELLED = "👌 Listo, cancelé la operación en curso. Escribe *ayuda* si necesitas algo más."
GENERIC_ERROR = "❌ Ocurrió un error procesando tu mensaje. Intenta de nuevo en unos minutos."
CORRUPT_FLOW = "❌ Ocurrió un error. Por favor, envía el código QR nuevamente."

# --- Auth gates ---
AUTH_REQUIRED = "⚠️ Esta acción requiere que estés registrado en el sistema. Contacta a un administrador."
ROLE_REQUIRED = "🔒 No tienes permisos para esta acción. Se requiere rol: {roles}"

# --- Help ---
HELP_HEADER = "🤖 *Comandos disponibles:*\n\n"
HELP_PUBLIC = (
    "📋 *Asistencia:*\n"
    "   Envía el código QR (ej: JA-A1B2C3D4)\n\n"
    "📝 *Ver programa:*\n"
    "   • \"ver programa PMA-X3kP9m\" (por código)\n"
    "   • \"programa del 25/01\" (por fecha)\n\n"
)
HELP_LEADERS = (
    "📋 *Registro manual de asistencia:*\n"
    "   • \"registrar asistencia de Juan en JA-XXXXXXXX\"\n"
    "   • \"registrar a María Pérez en JA-XXXXXXXX\"\n\n"
    "✏️ *Gestión de programas:*\n"
    "   • \"crear programa para el 25/01\"\n"
    "   • \"asignar bienvenida a María\"\n"
    "   • \"asignar oración a Juan en PMA-X3kP9m\"\n"
    "   • \"enviar programa\"\n\n"
)
HELP_ADMIN = (
    "👤 *Usuarios:*\n"
    "   • \"registrar a Juan 999888777\"\n"
    "   • \"buscar María\"\n"
)
HELP_FOOTER = "\n_Escribe *cancelar* para salir de cualquier formulario._"

# --- Attendance ---
QR_MISSING = "⚠️ No detecté un código QR válido. El formato es: JA-XXXXXXXX"
QR_MISSING_MANUAL = "⚠️ Necesito el código QR para registrar la asistencia.\n\nEjemplo: _registrar asistencia de Juan en JA-A1B2C3D4_"
SUBJECT_MISSING_MANUAL = "⚠️ Necesito el nombre o teléfono del usuario a registrar.\n\nEjemplo: _registrar asistencia de Juan en JA-A1B2C3D4_"
QR_INVALID = "❌ Código QR no válido. Verifica el código e intenta de nuevo."
QR_INACTIVE = "⏸️ Este código QR ya no está activo."
QR_OUT_OF_WINDOW = "⏰ El registro de asistencia solo está disponible de {inicio} a {fin}."
QR_NOT_FOUND_ON_FINISH = "❌ Error: QR no encontrado."
ALREADY_REGISTERED = "✅ Ya registraste tu asistencia esta semana para {tipo}. ¡Dios te bendiga!"
ALREADY_REGISTERED_RACE = "⚠️ Ya registraste tu asistencia esta semana."
ALREADY_REGISTERED_MANUAL = "⚠️ {nombre} ya tiene asistencia registrada esta semana para {tipo}."
ALREADY_REGISTERED_MANUAL_RACE = "⚠️ Este usuario ya tiene asistencia registrada esta semana."
REGISTRATION_ERROR = "❌ Ocurrió un error al registrar tu asistencia. Intenta de nuevo."
REGISTRATION_ERROR_MANUAL = "❌ Ocurrió un error al registrar la asistencia. Intenta de nuevo."
AMBIGUOUS_SUBJECT_HEADER = "⚠️ Encontré {total} usuarios con ese nombre:\n\n"
AMBIGUOUS_SUBJECT_FOOTER = "\n_Por favor especifica el teléfono del usuario._"
FORM_GREETING = "¡Hola {nombre}! 👋"
FORM_GREETING_MANUAL = "📝 Registrando asistencia de *{nombre}*"
FORM_INTRO = "Para *{tipo}* necesito algunos datos:"
ATTENDANCE_CONFIRMED_TITLE = "✅ *¡Asistencia registrada!*\n\n"
ATTENDANCE_ANSWERS_TITLE = "\n📝 *Datos registrados:*\n"
ATTENDANCE_REGISTERED_BY = "✍️ Registrado por: {nombre}\n"
ATTENDANCE_BLESSING = "\n¡Dios te bendiga! 🙏"

# --- Form fields ---
FIELD_NUMBER_INVALID = "⚠️ Por favor ingresa un número válido."
FIELD_NUMBER_MIN = "⚠️ El valor mínimo es {minimo}."
FIELD_NUMBER_MAX = "⚠️ El valor máximo es {maximo}."
FIELD_CHECKBOX_INVALID = "⚠️ Responde \"sí\" o \"no\"."
FIELD_SELECT_INVALID = "⚠️ Opción no válida. Elige un número de la lista."
FIELD_REQUIRED = "⚠️ Este campo es requerido."
QUESTION_RANGE_HINT = "_(Valor entre {minimo} y {maximo})_"
QUESTION_SELECT_HINT = "_Responde con el número de tu opción_"
QUESTION_CHECKBOX_HINT = "_(Responde \"sí\" o \"no\")_"

# --- Users ---
USER_CREATE_USAGE = (
    "⚠️ Para crear un usuario necesito:\n\n*Nombre* y *Teléfono*\n\n"
    "Ejemplos:\n• \"Registrar a Juan +51 999 888 777\"\n• \"Registrar a Juan 999888777\""
)
USER_ALREADY_EXISTS = "⚠️ Ya existe un usuario con el teléfono {telefono}:\n\n👤 {nombre}"
USER_CREATED = (
    "✅ *Usuario creado exitosamente*\n\n"
    "👤 *Nombre:* {nombre}\n"
    "📱 *Teléfono:* +{codigo_pais} {telefono}\n"
    "🎭 *Rol:* Participante"
)
USER_CREATE_ERROR = "❌ Error al crear el usuario. Intenta de nuevo."
USER_SEARCH_USAGE = "⚠️ Indica el nombre o teléfono a buscar.\n\nEjemplo: \"Buscar María\""
USER_SEARCH_EMPTY = "🔍 No se encontraron usuarios con \"{busqueda}\"."
USER_SEARCH_HEADER = "🔍 *Resultados para \"{busqueda}\":*\n\n"
USER_SEARCH_MORE = "_...y {restantes} más_"
USER_SEARCH_ERROR = "❌ Error al buscar usuarios."
USERS_NOTHING_PENDING = "❓ No hay una operación de usuarios pendiente. ¿Qué deseas hacer?"

# --- Programs ---
PROGRAM_DEFAULT_TITLE = "Programa Maranatha Adoración"
PROGRAM_DATE_REQUIRED = (
    "⚠️ Por favor especifica la fecha del programa.\n\n"
    "Ejemplo: \"crear programa para el 25/01\" o \"crear programa para mañana\""
)
PROGRAM_ALREADY_EXISTS = "⚠️ Ya existen {total} programa(s) para el {fecha}:\n\n{lista}"
PROGRAM_CREATED = (
    "✅ *Programa creado*\n\n"
    "🔖 *Código:* {codigo}\n"
    "📅 *Fecha:* {fecha}\n"
    "📋 *Título:* {titulo}\n"
    "📝 *Partes:* {partes}\n\n"
    "Para asignar participantes, escribe:\n"
    "\"Asignar [parte] a [nombre] en {codigo}\""
)
PROGRAM_CREATE_ERROR = "❌ Error al crear el programa."
PROGRAM_CODE_NOT_FOUND = "📭 No encontré el programa con código *{codigo}*.\n\nVerifica el código o escribe \"ver programa del [fecha]\""
PROGRAM_DATE_EMPTY = "📭 No hay programas para el {fecha}.\n\n¿Deseas crear uno? Escribe \"crear programa para el {fecha_corta}\""
PROGRAM_DATE_MULTIPLE = "📋 *Encontré {total} programas para el {fecha}:*\n\n"
PROGRAM_DATE_MULTIPLE_FOOTER = "\nEscribe el código para ver detalles.\nEj: \"ver {codigo}\""
PROGRAM_NONE_UPCOMING = "📭 No hay programas próximos.\n\n¿Deseas crear uno? Escribe \"crear programa para el [fecha]\""
PROGRAM_VIEW_ERROR = "❌ Error al obtener el programa."
PROGRAM_PART_UNASSIGNED = "_(sin asignar)_"
ASSIGN_USAGE = (
    "⚠️ Usa el formato: \"Asignar [parte] a [nombre]\"\n\n"
    "Ejemplo: \"Asignar bienvenida a María\"\n"
    "O con código: \"Asignar bienvenida a María en PMA-X3kP9m\""
)
ASSIGN_PROGRAM_NOT_FOUND = "❌ No encontré el programa con código \"{codigo}\""
ASSIGN_NO_PROGRAM = "❌ No hay programas próximos.\n\nPrimero crea uno con \"crear programa para el [fecha]\""
ASSIGN_PART_NOT_FOUND = "❌ No encontré la parte \"{parte}\".\n\n📋 Partes disponibles:\n{partes}"
ASSIGN_DONE = "✅ *¡Asignación realizada!*\n\n🔖 *Programa:* {codigo}\n👤 {nombre}{libre}\n📌 {parte}\n📅 {fecha}"
ASSIGN_FREE_TEXT_MARK = " _(nombre libre)_"
ASSIGN_ERROR = "❌ Error al asignar. Intenta de nuevo."
PROGRAM_TEXT_PROCESSED = (
    "✅ *Programa procesado*\n\n"
    "🔖 *Código:* {codigo}\n"
    "📅 Fecha: {fecha}\n"
    "📋 Partes actualizadas: {partes}\n"
    "👥 Asignaciones creadas: {asignaciones}\n"
)
PROGRAM_TEXT_WARNINGS = "\n⚠️ *Advertencias:*\n"
PROGRAM_TEXT_MORE_WARNINGS = "  ... y {restantes} más\n"
PROGRAM_TEXT_ERROR = "❌ Error al procesar el programa. Verifica el formato."
PROGRAM_TEXT_NO_DATE = "⚠️ No encontré la fecha del programa. Incluye una línea como \"Programa 25/01/2026\"."
PROGRAMS_NOTHING_PENDING = "❓ No hay una operación de programas pendiente."

# --- Notifications ---
DISPATCH_NO_PROGRAM = "📭 No hay programas próximos. Crea uno primero."
DISPATCH_NO_ASSIGNMENTS = "⚠️ El programa del {fecha} no tiene participantes asignados."
DISPATCH_SUMMARY_HEADER = "📋 *Programa del {fecha}*\n\n👥 *Participantes a notificar ({total}):*\n"
DISPATCH_CONFIRM = "\n¿Confirmas el envío? Responde *sí* o *no*."
DISPATCH_CANCELLED = "❌ Envío cancelado."
DISPATCH_SENDING = "📤 Enviando notificaciones..."
DISPATCH_DONE = "✅ *Envío completado*\n\n📤 Enviados: {enviados}\n"
DISPATCH_ERRORS = "❌ Errores: {errores}\n"
DISPATCH_PREPARE_ERROR = "❌ Error al preparar el envío del programa."
DISPATCH_TEMPLATE_NAME = "recordatorio_programa"
